"""
SQLAlchemy ORM models for identity links, whitelist entries and the audit trail.
Integer primary keys keep "most recent" totally ordered by ``(granted_at, id)``.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# =============================================================================
# Enums
# =============================================================================


class LinkSource(str, PyEnum):
    """How an identity link was observed."""

    MANUAL = "manual"
    TICKET = "ticket"
    VERIFIED = "verified"
    SQUADJS = "squadjs"
    IMPORT = "import"
    ADMIN = "admin"


class EntrySource(str, PyEnum):
    """Origin of a whitelist entry."""

    ROLE = "role"
    MANUAL = "manual"
    DONATION = "donation"
    TICKET = "ticket"


class GrantType(str, PyEnum):
    """Access level category of a whitelist entry."""

    STAFF = "staff"
    WHITELIST = "whitelist"


class AuditSeverity(str, PyEnum):
    """Severity attached to audit records."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# =============================================================================
# Identity Links
# =============================================================================


class IdentityLink(Base):
    """Confidence-scored association between a Discord account and a game account."""

    __tablename__ = "identity_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Discord user ID",
    )
    game_id: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Steam ID64",
    )
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[LinkSource] = mapped_column(
        Enum(LinkSource, values_callable=_enum_values, native_enum=False, length=20),
        default=LinkSource.MANUAL,
        nullable=False,
    )
    confidence: Mapped[float] = mapped_column(
        Float,
        default=1.0,
        nullable=False,
        comment="0.0-1.0; 1.0 means self-verified",
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        default=dict,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("external_id", "game_id", name="uq_identity_links_external_game"),
        Index("ix_identity_links_external_id", "external_id"),
        Index("ix_identity_links_game_id", "game_id"),
        Index("ix_identity_links_confidence", "confidence"),
    )

    @property
    def is_verified(self) -> bool:
        return self.confidence >= 1.0


# =============================================================================
# Whitelist Entries
# =============================================================================


class WhitelistEntry(Base):
    """
    A grant (or a recorded denial) of game-server access for one subject.

    ``subject_game_id`` is a snapshot of the subject's primary link taken at
    write time. It is not a foreign key and can go stale until the next
    reconciliation refreshes it.
    """

    __tablename__ = "whitelist_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_external_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subject_game_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subject_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_tier: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Role group label, e.g. Moderator",
    )
    grant_type: Mapped[GrantType] = mapped_column(
        Enum(GrantType, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
    )
    source: Mapped[EntrySource] = mapped_column(
        Enum(EntrySource, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
    )
    approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    granted_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="NULL means permanent",
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        default=dict,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_whitelist_entries_subject_source", "subject_external_id", "source"),
        Index("ix_whitelist_entries_game_id", "subject_game_id"),
        Index("ix_whitelist_entries_state", "approved", "revoked"),
    )

    @property
    def is_placeholder(self) -> bool:
        """Unapproved, not revoked: waiting for an identity link."""
        return not self.approved and not self.revoked

    @property
    def is_security_blocked(self) -> bool:
        """A denied elevated grant still eligible for a later upgrade."""
        meta = self.metadata_ or {}
        return (
            not self.approved
            and self.revoked
            and bool(meta.get("securityBlocked"))
            and not meta.get("superseded")
        )

    @property
    def is_granting(self) -> bool:
        """Approved and not revoked; expiry is checked separately."""
        return self.approved and not self.revoked


# =============================================================================
# Audit Trail
# =============================================================================


class AuditRecord(Base):
    """Append-only record of a reconciliation decision or administrative action."""

    __tablename__ = "audit_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_id: Mapped[UUID] = mapped_column(
        default=uuid4,
        unique=True,
        nullable=False,
    )
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(50), nullable=False, default="system")
    actor_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    actor_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    target_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guild_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", nullable=True)
    severity: Mapped[AuditSeverity] = mapped_column(
        Enum(AuditSeverity, values_callable=_enum_values, native_enum=False, length=10),
        default=AuditSeverity.INFO,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_audit_records_action_type", "action_type"),
        Index("ix_audit_records_target", "target_type", "target_id"),
        Index("ix_audit_records_created_at", "created_at"),
    )
