"""
Conversion Tracking Data Contracts

Schemas for event submissions entering the relay and for responses coming
back from the attribution API.

- Submissions accept short identity codes (em, ph, fn...) and long aliases
  (email, phone, first_name...) inside user_data; normalization happens later
- Event names outside the standard set are carried as Custom events
- Access tokens travel as SecretStr so they never show up in reprs or logs
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)


class EventName(str, Enum):
    """Standard conversion event names"""
    PAGE_VIEW = "PageView"
    VIEW_CONTENT = "ViewContent"
    SEARCH = "Search"
    ADD_TO_CART = "AddToCart"
    ADD_TO_WISHLIST = "AddToWishlist"
    INITIATE_CHECKOUT = "InitiateCheckout"
    ADD_PAYMENT_INFO = "AddPaymentInfo"
    PURCHASE = "Purchase"
    LEAD = "Lead"
    COMPLETE_REGISTRATION = "CompleteRegistration"
    CONTACT = "Contact"
    CUSTOMIZE_PRODUCT = "CustomizeProduct"
    DONATE = "Donate"
    FIND_LOCATION = "FindLocation"
    SCHEDULE = "Schedule"
    START_TRIAL = "StartTrial"
    SUBMIT_APPLICATION = "SubmitApplication"
    SUBSCRIBE = "Subscribe"
    CUSTOM = "Custom"

    @classmethod
    def is_standard(cls, value: str) -> bool:
        return value in cls._value2member_map_ and value != cls.CUSTOM.value


class ActionSource(str, Enum):
    """Where the conversion took place"""
    WEBSITE = "website"
    APP = "app"
    PHONE_CALL = "phone_call"
    CHAT = "chat"
    EMAIL = "email"
    SYSTEM_GENERATED = "system_generated"
    OTHER = "other"


class EventStatus(str, Enum):
    """Lifecycle of a tracked event"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"

    @property
    def is_final(self) -> bool:
        return self is not EventStatus.PENDING


class CustomData(BaseModel):
    """Commerce / custom properties forwarded unchanged to the attribution API"""

    model_config = ConfigDict(extra="allow")

    value: Optional[float] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    content_name: Optional[str] = None
    content_category: Optional[str] = None
    content_ids: Optional[List[str]] = None
    contents: Optional[List[Dict[str, Any]]] = None
    content_type: Optional[str] = None
    order_id: Optional[str] = None
    predicted_ltv: Optional[float] = None
    num_items: Optional[int] = Field(None, ge=0)
    search_string: Optional[str] = None
    status: Optional[str] = None
    delivery_category: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v):
        if v is None:
            return v
        if not v.isalpha():
            raise ValueError("currency must be a 3-letter ISO code")
        return v.upper()

    def to_api_format(self) -> Dict[str, Any]:
        """Drop empty values; extra properties stay at the top level"""
        return self.model_dump(exclude_none=True)


class EventSubmission(BaseModel):
    """
    A single event as submitted by a browser script, server or tag manager.

    Unknown event names are rewritten to Custom with the original name kept
    in custom_event_name.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    surface_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("surface_id", "pixel_id"),
    )
    event_name: str = Field(..., min_length=1, max_length=100)
    custom_event_name: Optional[str] = Field(None, max_length=255)
    action_source: ActionSource = ActionSource.WEBSITE
    source_url: str = Field(
        ...,
        max_length=2048,
        validation_alias=AliasChoices("source_url", "event_source_url"),
    )
    event_id: Optional[str] = Field(None, max_length=255)
    event_time: Optional[int] = Field(None, gt=0)
    visitor_id: Optional[str] = Field(None, max_length=100)
    user_data: Dict[str, Any] = Field(default_factory=dict)
    custom_data: Optional[CustomData] = None
    opt_out: bool = False

    @field_validator("action_source", mode="before")
    @classmethod
    def default_action_source(cls, v):
        if v is None or v == "":
            return ActionSource.WEBSITE
        return v

    @field_validator("source_url")
    @classmethod
    def check_source_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("source_url must be an absolute http(s) URL")
        return v

    @field_validator("user_data", mode="before")
    @classmethod
    def empty_user_data(cls, v):
        return v or {}

    @model_validator(mode="after")
    def resolve_event_name(self):
        if not EventName.is_standard(self.event_name) and self.event_name != EventName.CUSTOM.value:
            self.custom_event_name = self.custom_event_name or self.event_name
            self.event_name = EventName.CUSTOM.value
        if self.event_name == EventName.CUSTOM.value and not self.custom_event_name:
            raise ValueError("custom_event_name is required for Custom events")
        return self

    @property
    def source_domain(self) -> str:
        return (urlparse(self.source_url).hostname or "").lower()


class RequestContext(BaseModel):
    """Connection-level signals captured at the intake boundary"""

    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    click_id_cookie: Optional[str] = None
    browser_id_cookie: Optional[str] = None


class AdmissionResult(BaseModel):
    """Outcome of admitting one submission"""

    event_id: str
    external_event_id: Optional[str] = None
    status: EventStatus
    match_quality_score: int = Field(..., ge=0, le=100)
    external_scale: int = Field(..., ge=1, le=10)
    tier: str
    enriched: bool = False
    message: Optional[str] = None


class BatchItemResult(BaseModel):
    """Per-index result of a batch submission"""

    index: int
    success: bool
    event_id: Optional[str] = None
    status: Optional[EventStatus] = None
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class SurfaceCredential(BaseModel):
    """What a driver needs to post events for one surface"""

    model_config = ConfigDict(frozen=True)

    surface_id: str
    access_token: SecretStr
    test_event_code: Optional[str] = None


class DeliveryResponse(BaseModel):
    """Normalized answer from the attribution API"""

    success: bool
    accepted_count: int = 0
    trace_id: Optional[str] = None
    messages: List[Any] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_code: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, body: Dict[str, Any]) -> "DeliveryResponse":
        """Build from a 2xx JSON body; a body without events_received is not a success"""
        if "events_received" in body:
            return cls(
                success=True,
                accepted_count=int(body.get("events_received") or 0),
                trace_id=body.get("fbtrace_id"),
                messages=body.get("messages") or [],
                raw=body,
            )

        error = body.get("error")
        if not isinstance(error, dict):
            error = {"message": error} if isinstance(error, str) else {}
        return cls(
            success=False,
            trace_id=error.get("fbtrace_id") or body.get("fbtrace_id"),
            error_message=error.get("message") or "Response did not acknowledge any events",
            error_code=error.get("code"),
            raw=body,
        )

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"raw"}, exclude_none=True)
