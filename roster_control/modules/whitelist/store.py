"""
Whitelist entry persistence.

Every write records a transition in the entry's ``metadata["history"]`` list
and marks the store dirty, so callers can invalidate cached status after
commit. The metadata dict is always reassigned, never mutated in place, so the
ORM sees the change.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from roster_control.db.models import EntrySource, GrantType, WhitelistEntry, as_utc, utcnow

SYSTEM_ACTOR = "SYSTEM"
SECURITY_ACTOR = "SECURITY_SYSTEM"


def entry_snapshot(entry: WhitelistEntry) -> dict[str, Any]:
    """JSON-safe view of an entry for audit before/after states."""
    meta = {key: value for key, value in (entry.metadata_ or {}).items() if key != "history"}
    return {
        "id": entry.id,
        "tier": entry.access_tier,
        "gameId": entry.subject_game_id,
        "grantType": entry.grant_type.value,
        "approved": entry.approved,
        "revoked": entry.revoked,
        "revokedReason": entry.revoked_reason,
        "expiresAt": entry.expires_at.isoformat() if entry.expires_at else None,
        "flags": meta,
    }


def most_recent_first(entries: Iterable[WhitelistEntry]) -> list[WhitelistEntry]:
    return sorted(entries, key=lambda e: (as_utc(e.granted_at), e.id or 0), reverse=True)


class WhitelistStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.dirty = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_active_entries(
        self,
        *,
        subject_external_id: str | None = None,
        subject_game_id: str | None = None,
        include_lapsed: bool = False,
        now: datetime | None = None,
    ) -> list[WhitelistEntry]:
        """
        Approved, unrevoked entries for a subject, oldest grant first.

        Expired entries are excluded unless ``include_lapsed`` is set.
        """
        if subject_external_id is None and subject_game_id is None:
            raise ValueError("subject_external_id or subject_game_id is required")

        stmt = select(WhitelistEntry).where(
            WhitelistEntry.approved.is_(True),
            WhitelistEntry.revoked.is_(False),
        )
        if subject_external_id is not None:
            stmt = stmt.where(WhitelistEntry.subject_external_id == subject_external_id)
        if subject_game_id is not None:
            stmt = stmt.where(WhitelistEntry.subject_game_id == subject_game_id)
        if not include_lapsed:
            stmt = stmt.where(
                or_(
                    WhitelistEntry.expires_at.is_(None),
                    WhitelistEntry.expires_at > (now or utcnow()),
                )
            )
        stmt = stmt.order_by(WhitelistEntry.granted_at.asc(), WhitelistEntry.id.asc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def lock_role_entries(self, external_id: str) -> list[WhitelistEntry]:
        """Lock and return every role-sourced row of one subject, oldest first."""
        result = await self.db.execute(
            select(WhitelistEntry)
            .where(
                WhitelistEntry.subject_external_id == external_id,
                WhitelistEntry.source == EntrySource.ROLE,
            )
            .order_by(WhitelistEntry.granted_at.asc(), WhitelistEntry.id.asc())
            .with_for_update()
        )
        return list(result.scalars().all())

    async def list_role_entries(self, external_id: str) -> list[WhitelistEntry]:
        result = await self.db.execute(
            select(WhitelistEntry)
            .where(
                WhitelistEntry.subject_external_id == external_id,
                WhitelistEntry.source == EntrySource.ROLE,
            )
            .order_by(WhitelistEntry.granted_at.asc(), WhitelistEntry.id.asc())
        )
        return list(result.scalars().all())

    async def subjects_with_role_entries(self) -> set[str]:
        """Discord ids that still hold at least one unrevoked role-sourced row."""
        result = await self.db.execute(
            select(WhitelistEntry.subject_external_id)
            .where(
                WhitelistEntry.source == EntrySource.ROLE,
                WhitelistEntry.revoked.is_(False),
                WhitelistEntry.subject_external_id.is_not(None),
            )
            .distinct()
        )
        return {value for value in result.scalars().all() if value}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_transition(
        self,
        entry: WhitelistEntry,
        transition: str,
        *,
        source: str,
        flags: dict[str, Any] | None = None,
        clear: Iterable[str] = (),
        now: datetime | None = None,
        **details: Any,
    ) -> None:
        """Merge ``flags`` into the metadata, drop ``clear`` keys and append history."""
        meta = dict(entry.metadata_ or {})
        for key in clear:
            meta.pop(key, None)
        if flags:
            meta.update(flags)
        event = {"at": (now or utcnow()).isoformat(), "transition": transition, "source": source}
        event.update({key: value for key, value in details.items() if value is not None})
        meta["history"] = [*meta.get("history", []), event]
        entry.metadata_ = meta
        self.dirty = True

    async def create_entry(
        self,
        *,
        subject_external_id: str | None,
        subject_game_id: str | None,
        access_tier: str,
        grant_type: GrantType,
        source: EntrySource,
        approved: bool,
        revoked: bool = False,
        subject_name: str | None = None,
        reason: str | None = None,
        granted_by: str | None = SYSTEM_ACTOR,
        revoked_by: str | None = None,
        revoked_reason: str | None = None,
        expires_at: datetime | None = None,
        flags: dict[str, Any] | None = None,
        transition: str = "created",
        history_source: str = "role_sync",
        now: datetime | None = None,
    ) -> WhitelistEntry:
        if source is EntrySource.ROLE and expires_at is not None:
            raise ValueError("role-sourced entries cannot expire")

        now = now or utcnow()
        entry = WhitelistEntry(
            subject_external_id=subject_external_id,
            subject_game_id=subject_game_id,
            subject_name=subject_name,
            access_tier=access_tier,
            grant_type=grant_type,
            source=source,
            approved=approved,
            revoked=revoked,
            reason=reason,
            granted_at=now,
            granted_by=granted_by,
            revoked_at=now if revoked else None,
            revoked_by=revoked_by if revoked else None,
            revoked_reason=revoked_reason if revoked else None,
            expires_at=expires_at,
            metadata_={},
        )
        self.record_transition(
            entry, transition, source=history_source, flags=flags, now=now, tier=access_tier
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def grant_entry(
        self,
        *,
        subject_game_id: str,
        access_tier: str,
        source: EntrySource,
        granted_by: str,
        duration: timedelta | None = None,
        subject_external_id: str | None = None,
        subject_name: str | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> WhitelistEntry:
        """Approved non-role grant (manual, donation, ticket); no duration means permanent."""
        if source is EntrySource.ROLE:
            raise ValueError("role-sourced entries are managed by reconciliation")
        now = now or utcnow()
        return await self.create_entry(
            subject_external_id=subject_external_id,
            subject_game_id=subject_game_id,
            subject_name=subject_name,
            access_tier=access_tier,
            grant_type=GrantType.WHITELIST,
            source=source,
            approved=True,
            reason=reason,
            granted_by=granted_by,
            expires_at=(now + duration) if duration is not None else None,
            transition="granted",
            history_source=source.value,
            now=now,
        )

    def revoke_entry(
        self,
        entry: WhitelistEntry,
        *,
        reason: str,
        revoked_by: str = SYSTEM_ACTOR,
        source: str = "role_sync",
        transition: str = "revoked",
        flags: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        now = now or utcnow()
        entry.revoked = True
        entry.revoked_at = now
        entry.revoked_by = revoked_by
        entry.revoked_reason = reason
        self.record_transition(entry, transition, source=source, flags=flags, now=now, reason=reason)
