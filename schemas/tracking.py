"""
Relay persistence schema (SQLAlchemy ORM)

Tables:
- tracking_surfaces: destination pixels with encrypted access tokens
- tracked_events: every admitted submission and its delivery state
- event_dedup_claims: one row per (surface, external event id) claim
- user_profiles / profile_identifiers: accumulated hashed identities
- match_quality_logs: append-only scoring analytics
"""
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from core.crypto import EncryptedJSON, EncryptedString
from core.database import utcnow


Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


class SurfaceModel(Base):
    """
    A tracking surface (pixel) events are delivered to.

    Managed by the admin surface; the relay only reads it, apart from the
    operator activation toggle.
    """

    __tablename__ = "tracking_surfaces"

    id = Column(String(36), primary_key=True, default=_uuid)
    surface_id = Column(String(64), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    access_token = Column(EncryptedString, nullable=False)
    test_event_code = Column(String(64), nullable=True)
    domains = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    events = relationship("TrackedEventModel", back_populates="surface")

    def accepts_domain(self, domain: str) -> bool:
        """
        Check `domain` against the allow-list

        Empty list accepts everything. Patterns: "*", exact host,
        "*.example.com" (the apex and any subdomain), and a bare
        "example.com" which also matches its subdomains.
        """
        if not self.domains:
            return True

        domain = (domain or "").lower()
        for pattern in self.domains:
            pattern = pattern.strip().lower()
            if pattern == "*" or pattern == domain:
                return True
            if pattern.startswith("*."):
                suffix = pattern[2:]
                if domain == suffix or domain.endswith("." + suffix):
                    return True
            elif domain.endswith("." + pattern):
                return True
        return False


class TrackedEventModel(Base):
    """One admitted event; status only moves away from pending"""

    __tablename__ = "tracked_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    surface_pk = Column(String(36), ForeignKey("tracking_surfaces.id"), nullable=False)
    external_event_id = Column(String(255), nullable=True)
    event_name = Column(String(64), nullable=False)
    custom_event_name = Column(String(255), nullable=True)
    action_source = Column(String(32), nullable=False, default="website")
    source_url = Column(Text, nullable=True)
    event_time = Column(Integer, nullable=False)
    visitor_id = Column(String(100), nullable=True)
    identity = Column(EncryptedJSON, nullable=True)
    custom_data = Column(JSON, nullable=True)
    opt_out = Column(Boolean, default=False, nullable=False)
    match_quality_score = Column(Integer, default=0, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    delivery_response = Column(JSON, nullable=True)
    trace_id = Column(String(128), nullable=True)
    error_message = Column(Text, nullable=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    surface = relationship("SurfaceModel", back_populates="events")

    __table_args__ = (
        Index("ix_tracked_events_surface_external", "surface_pk", "external_event_id"),
        Index("ix_tracked_events_surface_status", "surface_pk", "status"),
        Index("ix_tracked_events_status_created", "status", "created_at"),
    )

    @property
    def resolved_event_name(self) -> str:
        if self.event_name == "Custom" and self.custom_event_name:
            return self.custom_event_name
        return self.event_name


class DedupClaimModel(Base):
    """Atomic claim on an external event id within a surface"""

    __tablename__ = "event_dedup_claims"

    id = Column(Integer, primary_key=True, autoincrement=True)
    surface_pk = Column(String(36), nullable=False)
    external_event_id = Column(String(255), nullable=False)
    event_id = Column(String(36), nullable=False)
    claimed_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "surface_pk", "external_event_id",
            name="event_dedup_claims_surface_event_unique",
        ),
    )


class UserProfileModel(Base):
    """Accumulated hashed identity for a visitor"""

    __tablename__ = "user_profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    profile_key = Column(String(255), nullable=False, unique=True)
    surface_id = Column(String(64), nullable=True, index=True)
    visitor_id = Column(String(100), nullable=True)

    email = Column(String(64), nullable=True)
    phone = Column(String(64), nullable=True)
    first_name = Column(String(64), nullable=True)
    last_name = Column(String(64), nullable=True)
    gender = Column(String(64), nullable=True)
    date_of_birth = Column(String(64), nullable=True)
    city = Column(String(64), nullable=True)
    state = Column(String(64), nullable=True)
    zip = Column(String(64), nullable=True)
    country = Column(String(64), nullable=True)
    external_id = Column(String(255), nullable=True)
    click_id = Column(String(512), nullable=True)
    browser_id = Column(String(255), nullable=True)

    source_domain = Column(String(255), nullable=True)
    event_count = Column(Integer, default=0, nullable=False)
    match_quality_score = Column(Integer, default=0, nullable=False)
    first_seen_at = Column(DateTime, default=utcnow, nullable=False)
    last_seen_at = Column(DateTime, default=utcnow, nullable=False)

    identifiers = relationship(
        "ProfileIdentifierModel",
        back_populates="profile",
        order_by="ProfileIdentifierModel.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_user_profiles_surface_visitor", "surface_id", "visitor_id"),
        Index("ix_user_profiles_surface_external", "surface_id", "external_id"),
    )


class ProfileIdentifierModel(Base):
    """One known email/phone hash of a profile; inserts are idempotent"""

    __tablename__ = "profile_identifiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    profile_id = Column(String(36), ForeignKey("user_profiles.id"), nullable=False)
    kind = Column(String(16), nullable=False)
    value_hash = Column(String(64), nullable=False)
    first_seen_at = Column(DateTime, default=utcnow, nullable=False)

    profile = relationship("UserProfileModel", back_populates="identifiers")

    __table_args__ = (
        UniqueConstraint(
            "profile_id", "kind", "value_hash",
            name="profile_identifiers_profile_kind_value_unique",
        ),
        Index("ix_profile_identifiers_kind_value", "kind", "value_hash"),
    )


class MatchQualityLogModel(Base):
    """Append-only record of how well each admitted event could be matched"""

    __tablename__ = "match_quality_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    surface_id = Column(String(64), nullable=False, index=True)
    event_id = Column(String(36), nullable=True)
    event_name = Column(String(255), nullable=False)
    source_domain = Column(String(255), nullable=True)
    score = Column(Integer, nullable=False)

    has_email = Column(Boolean, default=False, nullable=False)
    has_phone = Column(Boolean, default=False, nullable=False)
    has_first_name = Column(Boolean, default=False, nullable=False)
    has_last_name = Column(Boolean, default=False, nullable=False)
    has_gender = Column(Boolean, default=False, nullable=False)
    has_date_of_birth = Column(Boolean, default=False, nullable=False)
    has_city = Column(Boolean, default=False, nullable=False)
    has_state = Column(Boolean, default=False, nullable=False)
    has_zip = Column(Boolean, default=False, nullable=False)
    has_country = Column(Boolean, default=False, nullable=False)
    has_external_id = Column(Boolean, default=False, nullable=False)
    has_client_ip = Column(Boolean, default=False, nullable=False)
    has_client_user_agent = Column(Boolean, default=False, nullable=False)
    has_click_id = Column(Boolean, default=False, nullable=False)
    has_browser_id = Column(Boolean, default=False, nullable=False)
    has_subscription_id = Column(Boolean, default=False, nullable=False)
    has_login_id = Column(Boolean, default=False, nullable=False)
    has_lead_id = Column(Boolean, default=False, nullable=False)
    has_address = Column(Boolean, default=False, nullable=False)

    was_enriched = Column(Boolean, default=False, nullable=False)
    score_before_enrichment = Column(Integer, nullable=True)
    enrichment_source = Column(String(64), nullable=True)
    event_date = Column(Date, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
