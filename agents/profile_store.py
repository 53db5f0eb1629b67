"""
Profile Store - accumulated visitor identities and enrichment
=============================================================

Purpose: remember every hashed identifier a visitor has ever shown so that a
later sparse event (e.g. a PageView carrying only a visitor id) can be sent
with the email/phone seen on an earlier event.

Contracts:
- Lookup priority: visitor id → external id → email hash → phone hash →
  browser id, surface-scoped first, then global profiles when cross-surface
  matching is on
- Merge only fills missing fields; a field present on the incoming identity
  is never overwritten
- Upsert: scalars are last-writer-wins, email/phone hashes are a set-union
  stored one row per hash and capped at MAX_MULTI_VALUES per kind,
  event_count is incremented in SQL
- Safe for concurrent writers on the same visitor without external locking
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog
from prometheus_client import Counter
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.database import utcnow
from core.identity import (
    ADDRESS_FIELDS,
    IdentityNormalizer,
    IdentityRecord,
    unique_hashes,
)
from core.privacy_hasher import hash_value
from core.scoring import MatchQualityScorer
from schemas.tracking import ProfileIdentifierModel, UserProfileModel

logger = structlog.get_logger()

# Metrics
profile_upserts_total = Counter(
    'tracking_profile_upserts_total',
    'Profile upserts by result',
    ['result']
)
enrichment_total = Counter(
    'tracking_enrichment_total',
    'Identity fields filled during enrichment, by source',
    ['source']
)

# Scalar columns copied to/from the identity record
PROFILE_SCALAR_FIELDS = (
    "email", "phone", "first_name", "last_name", "gender", "date_of_birth",
    "city", "state", "zip", "country", "external_id", "click_id", "browser_id",
)
# Fields a profile may contribute to a sparse identity
MERGEABLE_FIELDS = PROFILE_SCALAR_FIELDS

MAX_MULTI_VALUES = 10

SOURCE_PROFILE = "profile"
SOURCE_IP_GEO = "ip_geo"
SOURCE_PHONE_PREFIX = "phone_prefix"

# Resolves a client IP to raw geo fields: {"city", "state", "zip", "country"}
GeoResolver = Callable[[str], Optional[Dict[str, str]]]


class Profile(BaseModel):
    """Read-only view of a stored profile"""

    id: str
    surface_id: Optional[str] = None
    visitor_id: Optional[str] = None
    identity: IdentityRecord
    event_count: int = 0
    match_quality_score: int = 0
    source_domain: Optional[str] = None
    first_seen_at: datetime
    last_seen_at: datetime


class EnrichmentResult(BaseModel):
    """Identity after enrichment and where the extra fields came from"""

    identity: IdentityRecord
    sources: List[str] = Field(default_factory=list)
    score_before: int
    score_after: int

    @property
    def enriched(self) -> bool:
        return self.score_after > self.score_before

    @property
    def enrichment_source(self) -> Optional[str]:
        return ",".join(self.sources) if self.sources else None


class ProfileStore:
    """
    Profile persistence bound to one SQLAlchemy session

    The caller owns the transaction; every write here is either a single
    UPDATE statement or an INSERT guarded by a SAVEPOINT.
    """

    def __init__(
        self,
        session: Session,
        scorer: Optional[MatchQualityScorer] = None,
        normalizer: Optional[IdentityNormalizer] = None,
        cross_surface: bool = True,
        geo_resolver: Optional[GeoResolver] = None,
    ):
        self.session = session
        self.scorer = scorer or MatchQualityScorer()
        self.normalizer = normalizer or IdentityNormalizer()
        self.cross_surface = cross_surface
        self.geo_resolver = geo_resolver

    # ── Lookup ────────────────────────────────────────────────

    def lookup(
        self,
        surface_id: Optional[str],
        visitor_id: Optional[str] = None,
        external_id: Optional[str] = None,
        email_hash: Optional[str] = None,
        phone_hash: Optional[str] = None,
        browser_id: Optional[str] = None,
    ) -> Optional[Profile]:
        row = self._find_row(surface_id, visitor_id, external_id, email_hash, phone_hash, browser_id)
        return self._to_profile(row) if row is not None else None

    def _find_row(
        self,
        surface_id: Optional[str],
        visitor_id: Optional[str],
        external_id: Optional[str],
        email_hash: Optional[str],
        phone_hash: Optional[str],
        browser_id: Optional[str] = None,
    ) -> Optional[UserProfileModel]:
        scopes = [surface_id]
        if self.cross_surface and surface_id is not None:
            scopes.append(None)

        for scope in scopes:
            scope_clause = (
                UserProfileModel.surface_id.is_(None)
                if scope is None
                else UserProfileModel.surface_id == scope
            )
            newest = UserProfileModel.last_seen_at.desc()

            if visitor_id:
                row = self.session.execute(
                    select(UserProfileModel)
                    .where(scope_clause, UserProfileModel.visitor_id == visitor_id)
                    .order_by(newest)
                    .limit(1)
                ).scalar_one_or_none()
                if row is not None:
                    return row

            if external_id:
                row = self.session.execute(
                    select(UserProfileModel)
                    .where(scope_clause, UserProfileModel.external_id == external_id)
                    .order_by(newest)
                    .limit(1)
                ).scalar_one_or_none()
                if row is not None:
                    return row

            for kind, value_hash in (("email", email_hash), ("phone", phone_hash)):
                if not value_hash:
                    continue
                row = self.session.execute(
                    select(UserProfileModel)
                    .join(ProfileIdentifierModel, ProfileIdentifierModel.profile_id == UserProfileModel.id)
                    .where(
                        scope_clause,
                        ProfileIdentifierModel.kind == kind,
                        ProfileIdentifierModel.value_hash == value_hash,
                    )
                    .order_by(newest)
                    .limit(1)
                ).scalar_one_or_none()
                if row is not None:
                    return row

            if browser_id:
                row = self.session.execute(
                    select(UserProfileModel)
                    .where(scope_clause, UserProfileModel.browser_id == browser_id)
                    .order_by(newest)
                    .limit(1)
                ).scalar_one_or_none()
                if row is not None:
                    return row

        return None

    # ── Merge / enrichment ────────────────────────────────────

    def merge(self, profile: Optional[Profile], identity: IdentityRecord) -> IdentityRecord:
        """Fill fields missing from `identity` with the profile's values"""
        if profile is None:
            return identity

        stored = profile.identity
        changes = {
            field: getattr(stored, field)
            for field in MERGEABLE_FIELDS
            if not identity.has(field) and stored.has(field)
        }

        email = changes.get("email", identity.email)
        emails = unique_hashes(
            (email,) + tuple(identity.email_all) + stored.all_emails()
        )
        if emails != identity.email_all:
            changes["email_all"] = emails

        phone = changes.get("phone", identity.phone)
        phones = unique_hashes(
            (phone,) + tuple(identity.phone_all) + stored.all_phones()
        )
        if phones != identity.phone_all:
            changes["phone_all"] = phones

        return identity.with_fields(**changes) if changes else identity

    def enrich(
        self,
        identity: IdentityRecord,
        profile: Optional[Profile] = None,
        phone_country: Optional[str] = None,
        infer_country: bool = True,
    ) -> EnrichmentResult:
        """Merge the profile, then fill geo from the client IP and the phone prefix"""
        score_before = self.scorer.quick_score(identity)
        sources = []

        enriched = self.merge(profile, identity)
        if enriched != identity:
            sources.append(SOURCE_PROFILE)

        geo_fields = self._resolve_geo(enriched)
        if geo_fields:
            enriched = enriched.with_fields(**geo_fields)
            sources.append(SOURCE_IP_GEO)

        if infer_country and phone_country and not enriched.country:
            enriched = enriched.with_fields(country=hash_value(phone_country))
            sources.append(SOURCE_PHONE_PREFIX)

        for source in sources:
            enrichment_total.labels(source=source).inc()

        return EnrichmentResult(
            identity=enriched,
            sources=sources,
            score_before=score_before,
            score_after=self.scorer.quick_score(enriched),
        )

    def _resolve_geo(self, identity: IdentityRecord) -> Dict[str, str]:
        if self.geo_resolver is None or not identity.client_ip:
            return {}
        if all(identity.has(f) for f in ADDRESS_FIELDS):
            return {}

        try:
            raw_geo = self.geo_resolver(identity.client_ip) or {}
        except Exception as e:
            logger.warning("geo_lookup_failed", error=str(e))
            return {}

        geo = self.normalizer.normalize(raw_geo).identity
        return {
            field: getattr(geo, field)
            for field in ADDRESS_FIELDS
            if geo.has(field) and not identity.has(field)
        }

    # ── Upsert ────────────────────────────────────────────────

    def upsert(
        self,
        surface_id: Optional[str],
        visitor_id: Optional[str],
        identity: IdentityRecord,
        source_domain: Optional[str] = None,
    ) -> Optional[Profile]:
        """
        Record `identity` against the visitor's profile

        Returns:
            The updated profile, or None when there is nothing to key it on
        """
        emails = identity.all_emails()
        phones = identity.all_phones()
        profile_key = self._profile_key(surface_id, visitor_id, identity, emails, phones)
        if profile_key is None:
            profile_upserts_total.labels(result="skipped").inc()
            return None

        now = utcnow()
        row = self._find_row(
            surface_id,
            visitor_id,
            identity.external_id,
            identity.email,
            identity.phone,
            identity.browser_id,
        )
        created = row is None
        if created:
            row = self._create_row(profile_key, surface_id, visitor_id, source_domain, now)

        values = {
            field: getattr(identity, field)
            for field in PROFILE_SCALAR_FIELDS
            if identity.has(field)
        }
        if visitor_id:
            values["visitor_id"] = visitor_id
        if source_domain:
            values["source_domain"] = source_domain
        values["event_count"] = UserProfileModel.event_count + 1
        values["last_seen_at"] = now

        self.session.execute(
            update(UserProfileModel)
            .where(UserProfileModel.id == row.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        for kind, hashes in (("email", emails), ("phone", phones)):
            for value_hash in hashes:
                self._add_identifier(row.id, kind, value_hash, now)

        self.session.expire(row)
        profile = self._to_profile(row)
        score = self.scorer.quick_score(profile.identity)
        self.session.execute(
            update(UserProfileModel)
            .where(UserProfileModel.id == row.id)
            .values(match_quality_score=score)
            .execution_options(synchronize_session=False)
        )

        profile_upserts_total.labels(result="created" if created else "updated").inc()
        logger.debug(
            "profile_upserted",
            profile_id=row.id,
            surface_id=surface_id,
            created=created,
            event_count=profile.event_count,
        )
        return profile.model_copy(update={"match_quality_score": score})

    @staticmethod
    def _profile_key(surface_id, visitor_id, identity, emails, phones) -> Optional[str]:
        scope = surface_id or "*"
        if visitor_id:
            return f"{scope}:visitor:{visitor_id}"
        if identity.external_id:
            return f"{scope}:external:{identity.external_id}"
        if emails:
            return f"{scope}:email:{emails[0]}"
        if phones:
            return f"{scope}:phone:{phones[0]}"
        if identity.browser_id:
            return f"{scope}:browser:{identity.browser_id}"
        return None

    def _create_row(
        self,
        profile_key: str,
        surface_id: Optional[str],
        visitor_id: Optional[str],
        source_domain: Optional[str],
        now: datetime,
    ) -> UserProfileModel:
        row = UserProfileModel(
            profile_key=profile_key,
            surface_id=surface_id,
            visitor_id=visitor_id,
            source_domain=source_domain,
            event_count=0,
            first_seen_at=now,
            last_seen_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(row)
            return row
        except IntegrityError:
            # Another writer created the same profile first
            logger.debug("profile_create_conflict", profile_key=profile_key)
            return self.session.execute(
                select(UserProfileModel).where(UserProfileModel.profile_key == profile_key)
            ).scalar_one()

    def _add_identifier(self, profile_id: str, kind: str, value_hash: str, now: datetime) -> None:
        exists = self.session.execute(
            select(ProfileIdentifierModel.id).where(
                ProfileIdentifierModel.profile_id == profile_id,
                ProfileIdentifierModel.kind == kind,
                ProfileIdentifierModel.value_hash == value_hash,
            )
        ).first()
        if exists:
            return

        stored = self.session.execute(
            select(func.count(ProfileIdentifierModel.id)).where(
                ProfileIdentifierModel.profile_id == profile_id,
                ProfileIdentifierModel.kind == kind,
            )
        ).scalar_one()
        if stored >= MAX_MULTI_VALUES:
            logger.debug("profile_identifier_cap_reached", profile_id=profile_id, kind=kind)
            return

        try:
            with self.session.begin_nested():
                self.session.add(ProfileIdentifierModel(
                    profile_id=profile_id,
                    kind=kind,
                    value_hash=value_hash,
                    first_seen_at=now,
                ))
        except IntegrityError:
            logger.debug("profile_identifier_exists", profile_id=profile_id, kind=kind)

    def _to_profile(self, row: UserProfileModel) -> Profile:
        emails = [i.value_hash for i in row.identifiers if i.kind == "email"]
        phones = [i.value_hash for i in row.identifiers if i.kind == "phone"]

        fields = {field: getattr(row, field) for field in PROFILE_SCALAR_FIELDS}
        fields["email_all"] = unique_hashes([row.email] + emails)[:MAX_MULTI_VALUES]
        fields["phone_all"] = unique_hashes([row.phone] + phones)[:MAX_MULTI_VALUES]

        return Profile(
            id=row.id,
            surface_id=row.surface_id,
            visitor_id=row.visitor_id,
            identity=IdentityRecord(**{k: v for k, v in fields.items() if v}),
            event_count=row.event_count,
            match_quality_score=row.match_quality_score,
            source_domain=row.source_domain,
            first_seen_at=row.first_seen_at,
            last_seen_at=row.last_seen_at,
        )
