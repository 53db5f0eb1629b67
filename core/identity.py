"""
Identity normalization
Turns raw, loosely-formatted customer information into a hashed IdentityRecord.

Rules per field (applied before hashing):
- email: trimmed, lowercased, must look like an address
- phone: digits only, international "00" prefix removed, 7-15 digits
- names: lowercased, titles/suffixes removed, accents folded, letters only
- gender: "m" or "f"
- date of birth: YYYYMMDD
- city/state/zip/country: folded to the canonical short form
- external_id: trimmed

Malformed values are dropped, never raised: a submission with a bad phone
number is still a valid submission.
"""
import ipaddress
import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from contracts.tracking_schemas import RequestContext
from core.privacy_hasher import hash_value, is_hashed


logger = logging.getLogger(__name__)


HASHED_FIELDS = (
    "email", "phone", "first_name", "last_name", "gender", "date_of_birth",
    "city", "state", "zip", "country", "external_id",
)
OPERATIONAL_FIELDS = (
    "client_ip", "client_user_agent", "click_id", "browser_id",
    "subscription_id", "login_id", "lead_id",
)
ADDRESS_FIELDS = ("city", "state", "zip", "country")

# Field name -> attribution API user_data key
API_FIELD_NAMES = {
    "email": "em",
    "phone": "ph",
    "first_name": "fn",
    "last_name": "ln",
    "gender": "ge",
    "date_of_birth": "db",
    "city": "ct",
    "state": "st",
    "zip": "zp",
    "country": "country",
    "external_id": "external_id",
    "client_ip": "client_ip_address",
    "client_user_agent": "client_user_agent",
    "click_id": "fbc",
    "browser_id": "fbp",
    "subscription_id": "subscription_id",
    "login_id": "fb_login_id",
    "lead_id": "lead_id",
}

# Accepted raw keys per field, first match wins
FIELD_ALIASES = {
    "email": ("em", "email"),
    "phone": ("ph", "phone"),
    "first_name": ("fn", "first_name"),
    "last_name": ("ln", "last_name"),
    "gender": ("ge", "gender"),
    "date_of_birth": ("db", "date_of_birth", "birthday"),
    "city": ("ct", "city"),
    "state": ("st", "state"),
    "zip": ("zp", "zip", "zip_code", "postal_code", "zipcode"),
    "country": ("country", "country_code"),
    "external_id": ("external_id",),
    "client_ip": ("client_ip_address", "ip"),
    "client_user_agent": ("client_user_agent", "user_agent"),
    "click_id": ("fbc",),
    "browser_id": ("fbp",),
    "subscription_id": ("subscription_id",),
    "login_id": ("fb_login_id",),
    "lead_id": ("lead_id",),
}
MULTI_ALIASES = {
    "email": ("em_multi",),
    "phone": ("ph_multi",),
}

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CLICK_ID_PATTERN = re.compile(r"^fb\.\d+\.\d+\..+$")
BROWSER_ID_PATTERN = re.compile(r"^fb\.\d+\.\d+\.\d+$")
NAME_TITLE_PATTERN = re.compile(r"^(mr|mrs|ms|miss|dr|prof|sir|dame)\.?\s+")
NAME_SUFFIX_PATTERN = re.compile(r"\s+(jr|sr|ii|iii|iv|phd|md|esq)\.?$")
NON_ALPHA_PATTERN = re.compile(r"[^a-z\s]")
MULTI_SPACE_PATTERN = re.compile(r"\s+")
US_ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")

DOB_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%m-%d-%Y", "%d-%m-%Y", "%Y/%m/%d")

MALE_VALUES = {"male", "man", "pria", "laki-laki", "laki"}
FEMALE_VALUES = {"female", "woman", "wanita", "perempuan"}

US_STATES = {
    "alabama": "al", "alaska": "ak", "arizona": "az", "arkansas": "ar",
    "california": "ca", "colorado": "co", "connecticut": "ct", "delaware": "de",
    "florida": "fl", "georgia": "ga", "hawaii": "hi", "idaho": "id",
    "illinois": "il", "indiana": "in", "iowa": "ia", "kansas": "ks",
    "kentucky": "ky", "louisiana": "la", "maine": "me", "maryland": "md",
    "massachusetts": "ma", "michigan": "mi", "minnesota": "mn", "mississippi": "ms",
    "missouri": "mo", "montana": "mt", "nebraska": "ne", "nevada": "nv",
    "new hampshire": "nh", "new jersey": "nj", "new mexico": "nm", "new york": "ny",
    "north carolina": "nc", "north dakota": "nd", "ohio": "oh", "oklahoma": "ok",
    "oregon": "or", "pennsylvania": "pa", "rhode island": "ri", "south carolina": "sc",
    "south dakota": "sd", "tennessee": "tn", "texas": "tx", "utah": "ut",
    "vermont": "vt", "virginia": "va", "washington": "wa", "west virginia": "wv",
    "wisconsin": "wi", "wyoming": "wy", "district of columbia": "dc",
}

COUNTRY_NAMES = {
    "united states": "us", "united states of america": "us", "usa": "us",
    "united kingdom": "gb", "uk": "gb", "great britain": "gb",
    "canada": "ca", "australia": "au", "germany": "de", "france": "fr",
    "indonesia": "id", "japan": "jp", "india": "in", "brazil": "br",
    "mexico": "mx", "spain": "es", "italy": "it", "netherlands": "nl",
    "singapore": "sg", "malaysia": "my", "philippines": "ph", "thailand": "th",
    "vietnam": "vn", "south korea": "kr", "china": "cn", "taiwan": "tw",
    "hong kong": "hk", "new zealand": "nz", "cambodia": "kh", "turkey": "tr",
    "argentina": "ar", "colombia": "co", "chile": "cl", "peru": "pe",
    "south africa": "za", "nigeria": "ng", "egypt": "eg", "russia": "ru",
    "ukraine": "ua", "poland": "pl", "romania": "ro", "czech republic": "cz",
    "switzerland": "ch", "austria": "at", "belgium": "be", "sweden": "se",
    "norway": "no", "denmark": "dk", "finland": "fi", "ireland": "ie",
    "portugal": "pt", "saudi arabia": "sa", "united arab emirates": "ae", "uae": "ae",
}

# International dialing prefix -> ISO-2 country
PHONE_COUNTRY_PREFIXES = {
    "1": "us", "7": "ru", "20": "eg", "27": "za", "31": "nl", "32": "be",
    "33": "fr", "34": "es", "39": "it", "40": "ro", "41": "ch", "43": "at",
    "44": "gb", "45": "dk", "46": "se", "47": "no", "48": "pl", "49": "de",
    "51": "pe", "52": "mx", "54": "ar", "55": "br", "56": "cl", "57": "co",
    "60": "my", "61": "au", "62": "id", "63": "ph", "64": "nz", "65": "sg",
    "66": "th", "81": "jp", "82": "kr", "84": "vn", "86": "cn", "90": "tr",
    "91": "in", "234": "ng", "351": "pt", "353": "ie", "358": "fi",
    "380": "ua", "420": "cz", "852": "hk", "855": "kh", "886": "tw",
    "966": "sa", "971": "ae",
}


def fold_accents(value: str) -> str:
    """Strip diacritics, keeping the base ASCII letters"""
    decomposed = unicodedata.normalize("NFKD", value)
    return decomposed.encode("ascii", "ignore").decode("ascii")


def infer_country_from_phone(digits: Optional[str]) -> Optional[str]:
    """Longest matching dialing prefix wins (3, then 2, then 1 digit)"""
    if not digits or not digits.isdigit():
        return None
    for length in (3, 2, 1):
        country = PHONE_COUNTRY_PREFIXES.get(digits[:length])
        if country:
            return country
    return None


def unique_hashes(values: Iterable[Optional[str]]) -> Tuple[str, ...]:
    """De-duplicate, dropping empties and keeping first-appearance order"""
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)


class IdentityRecord(BaseModel):
    """
    Hashed identity attached to an event or profile.

    PII fields hold SHA-256 hex digests only. email_all/phone_all keep every
    known hash in order of first appearance, with the primary value first.
    """

    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    external_id: Optional[str] = None

    client_ip: Optional[str] = None
    client_user_agent: Optional[str] = None
    click_id: Optional[str] = None
    browser_id: Optional[str] = None
    subscription_id: Optional[str] = None
    login_id: Optional[str] = None
    lead_id: Optional[str] = None

    email_all: Tuple[str, ...] = ()
    phone_all: Tuple[str, ...] = ()

    def has(self, field: str) -> bool:
        return bool(getattr(self, field, None))

    def present_fields(self) -> List[str]:
        return [f for f in HASHED_FIELDS + OPERATIONAL_FIELDS if self.has(f)]

    @property
    def has_address(self) -> bool:
        return any(self.has(f) for f in ADDRESS_FIELDS)

    @property
    def is_empty(self) -> bool:
        return not self.present_fields() and not self.email_all and not self.phone_all

    def with_fields(self, **changes: Any) -> "IdentityRecord":
        """Return a new record with `changes` applied"""
        return self.model_copy(update=changes)

    def all_emails(self) -> Tuple[str, ...]:
        return unique_hashes(((self.email,) if self.email else ()) + tuple(self.email_all))

    def all_phones(self) -> Tuple[str, ...]:
        return unique_hashes(((self.phone,) if self.phone else ()) + tuple(self.phone_all))

    def to_api_format(self) -> Dict[str, Any]:
        """user_data block for the attribution API: PII wrapped in lists"""
        data: Dict[str, Any] = {}

        emails = self.all_emails()
        if emails:
            data["em"] = list(emails)
        phones = self.all_phones()
        if phones:
            data["ph"] = list(phones)

        for field in HASHED_FIELDS:
            if field in ("email", "phone"):
                continue
            value = getattr(self, field)
            if value:
                data[API_FIELD_NAMES[field]] = [value]

        for field in OPERATIONAL_FIELDS:
            value = getattr(self, field)
            if value:
                data[API_FIELD_NAMES[field]] = value

        return data

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)

    @classmethod
    def from_storage(cls, data: Optional[Mapping[str, Any]]) -> "IdentityRecord":
        return cls.model_validate(dict(data or {}))


@dataclass(frozen=True)
class NormalizedIdentity:
    """Normalizer output: the hashed record plus non-PII hints derived on the way"""
    identity: IdentityRecord
    phone_country: Optional[str] = None


class IdentityNormalizer:
    """
    Normalize and hash raw customer information

    Deterministic: the same raw input and context always produce the same
    record. Never raises on malformed values.
    """

    def __init__(self, max_user_agent_length: int = 1024):
        self.max_user_agent_length = max_user_agent_length
        self._hashed_normalizers = {
            "email": self.normalize_email,
            "phone": self.normalize_phone,
            "first_name": self.normalize_name,
            "last_name": self.normalize_name,
            "gender": self.normalize_gender,
            "date_of_birth": self.normalize_date_of_birth,
            "city": self.normalize_city,
            "state": self.normalize_state,
            "zip": self.normalize_zip,
            "country": self.normalize_country,
            "external_id": self.normalize_external_id,
        }

    def normalize(
        self,
        raw: Optional[Mapping[str, Any]],
        context: Optional[RequestContext] = None,
    ) -> NormalizedIdentity:
        raw = raw or {}
        fields: Dict[str, Any] = {}
        phone_country = None

        for field, normalizer in self._hashed_normalizers.items():
            if field in MULTI_ALIASES:
                continue
            value = self._first_scalar(self._lookup(raw, FIELD_ALIASES[field]))
            fields[field] = self._hash_normalized(value, normalizer)

        emails = self._normalize_multi(raw, "email", self.normalize_email)
        phones = self._normalize_multi(raw, "phone", self.normalize_phone)
        fields["email"] = emails[0] if emails else None
        fields["email_all"] = emails
        fields["phone"] = phones[0] if phones else None
        fields["phone_all"] = phones

        primary_phone = self._first_scalar(self._lookup(raw, FIELD_ALIASES["phone"]))
        if primary_phone is not None and not is_hashed(str(primary_phone).strip().lower()):
            phone_country = infer_country_from_phone(self.normalize_phone(primary_phone))

        fields["client_ip"] = self._valid_ip(
            self._first_scalar(self._lookup(raw, FIELD_ALIASES["client_ip"]))
        )
        fields["client_user_agent"] = self._clean_text(
            self._first_scalar(self._lookup(raw, FIELD_ALIASES["client_user_agent"]))
        )
        fields["click_id"] = self._match(
            self._first_scalar(self._lookup(raw, FIELD_ALIASES["click_id"])), CLICK_ID_PATTERN
        )
        fields["browser_id"] = self._match(
            self._first_scalar(self._lookup(raw, FIELD_ALIASES["browser_id"])), BROWSER_ID_PATTERN
        )
        for field in ("subscription_id", "login_id", "lead_id"):
            fields[field] = self._clean_text(
                self._first_scalar(self._lookup(raw, FIELD_ALIASES[field]))
            )

        if context is not None:
            self._merge_context(fields, context)

        if fields["client_user_agent"]:
            fields["client_user_agent"] = fields["client_user_agent"][: self.max_user_agent_length]

        identity = IdentityRecord(**{k: v for k, v in fields.items() if v})
        return NormalizedIdentity(identity=identity, phone_country=phone_country)

    # ── Per-field normalizers ─────────────────────────────────

    def normalize_email(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        text = text.lower()
        if not EMAIL_PATTERN.match(text):
            return None
        return text

    def normalize_phone(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        digits = re.sub(r"\D", "", text)
        if digits.startswith("00"):
            digits = digits[2:]
        # E.164: at most 15 digits including country code
        if len(digits) < 7 or len(digits) > 15:
            return None
        return digits

    def normalize_name(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        text = fold_accents(text.lower())
        text = NAME_TITLE_PATTERN.sub("", text)
        text = NAME_SUFFIX_PATTERN.sub("", text)
        text = NON_ALPHA_PATTERN.sub("", text)
        text = MULTI_SPACE_PATTERN.sub(" ", text).strip()
        return text or None

    def normalize_gender(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        text = text.lower()
        if text in FEMALE_VALUES or text.startswith("f"):
            return "f"
        if text in MALE_VALUES or text.startswith("m"):
            return "m"
        return None

    def normalize_date_of_birth(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None

        if re.fullmatch(r"\d{8}", text):
            try:
                datetime.strptime(text, "%Y%m%d")
            except ValueError:
                return None
            return text

        for fmt in DOB_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
            except ValueError:
                continue
            # Zero-padded input only, so "03/04/1990" is never read as two formats
            if parsed.strftime(fmt) == text:
                return parsed.strftime("%Y%m%d")

        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if 1900 <= parsed.year <= datetime.now().year:
            return parsed.strftime("%Y%m%d")
        return None

    def normalize_city(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        text = NON_ALPHA_PATTERN.sub("", fold_accents(text.lower()))
        text = MULTI_SPACE_PATTERN.sub(" ", text).strip()
        return text or None

    def normalize_state(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        text = MULTI_SPACE_PATTERN.sub(" ", fold_accents(text.lower())).strip()
        if re.fullmatch(r"[a-z]{2}", text):
            return text
        if text in US_STATES:
            return US_STATES[text]
        letters = NON_ALPHA_PATTERN.sub("", text).replace(" ", "")
        return letters[:2] or None

    def normalize_zip(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        text = text.replace(" ", "").lower()
        if US_ZIP_PATTERN.match(text):
            return text[:5]
        return text or None

    def normalize_country(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        text = MULTI_SPACE_PATTERN.sub(" ", fold_accents(text.lower())).strip()
        if re.fullmatch(r"[a-z]{2}", text):
            return text
        return COUNTRY_NAMES.get(text)

    def normalize_external_id(self, value: Any) -> Optional[str]:
        return self._clean_text(value)

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _lookup(raw: Mapping[str, Any], keys: Iterable[str]) -> Any:
        for key in keys:
            value = raw.get(key)
            if value is not None and value != "" and value != []:
                return value
        return None

    @staticmethod
    def _first_scalar(value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value

    @staticmethod
    def _clean_text(value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list, tuple, bool)):
            return None
        text = str(value).strip()
        return text or None

    def _hash_normalized(self, value: Any, normalizer) -> Optional[str]:
        text = self._clean_text(value)
        if text is None:
            return None
        if is_hashed(text.lower()):
            return text.lower()
        return hash_value(normalizer(text))

    def _normalize_multi(self, raw: Mapping[str, Any], field: str, normalizer) -> Tuple[str, ...]:
        values: List[Any] = []
        primary = self._lookup(raw, FIELD_ALIASES[field])
        if isinstance(primary, (list, tuple)):
            values.extend(primary)
        elif primary is not None:
            values.append(primary)

        extra = self._lookup(raw, MULTI_ALIASES[field])
        if isinstance(extra, str):
            extra = extra.split(",")
        if isinstance(extra, (list, tuple)):
            values.extend(extra)

        return unique_hashes(self._hash_normalized(v, normalizer) for v in values)

    def _valid_ip(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if not text:
            return None
        try:
            return str(ipaddress.ip_address(text))
        except ValueError:
            logger.debug("Dropping malformed client IP")
            return None

    def _match(self, value: Any, pattern: re.Pattern) -> Optional[str]:
        text = self._clean_text(value)
        if text and pattern.match(text):
            return text
        return None

    def _merge_context(self, fields: Dict[str, Any], context: RequestContext) -> None:
        if not fields.get("client_ip"):
            fields["client_ip"] = self._valid_ip(context.client_ip)
        if not fields.get("client_user_agent"):
            fields["client_user_agent"] = self._clean_text(context.user_agent)
        if not fields.get("click_id"):
            fields["click_id"] = self._match(context.click_id_cookie, CLICK_ID_PATTERN)
        if not fields.get("browser_id"):
            fields["browser_id"] = self._match(context.browser_id_cookie, BROWSER_ID_PATTERN)
