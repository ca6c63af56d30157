"""Read-side whitelist queries: stacked access status and per-user sync status."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from roster_control.core.cache import WhitelistStatusCache
from roster_control.core.logging import get_logger
from roster_control.db.models import as_utc, utcnow
from roster_control.modules.identity.store import IdentityLinkStore
from roster_control.modules.whitelist.store import WhitelistStore

logger = get_logger(__name__)


@dataclass(slots=True)
class WhitelistStatus:
    is_whitelisted: bool
    status: str
    expiration: datetime | None = None
    is_permanent: bool = False
    entry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["expiration"] = self.expiration.isoformat() if self.expiration else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WhitelistStatus:
        expiration = data.get("expiration")
        return cls(
            is_whitelisted=bool(data["is_whitelisted"]),
            status=str(data["status"]),
            expiration=datetime.fromisoformat(expiration) if expiration else None,
            is_permanent=bool(data.get("is_permanent", False)),
            entry_count=int(data.get("entry_count", 0)),
        )


class WhitelistStatusService:
    def __init__(self, db: AsyncSession, cache: WhitelistStatusCache | None = None) -> None:
        self.db = db
        self.cache = cache
        self.links = IdentityLinkStore(db)
        self.entries = WhitelistStore(db)

    async def get_whitelist_status(
        self,
        game_id: str,
        *,
        now: datetime | None = None,
    ) -> WhitelistStatus:
        """
        Combined status of every approved, unrevoked grant for a Steam id.

        Any permanent grant makes access permanent. Otherwise the durations of
        all grants are stacked onto the earliest grant date, so back-to-back
        donations extend each other instead of overlapping.
        """
        use_cache = self.cache is not None and now is None
        if use_cache:
            cached = await self.cache.get_status(game_id)
            if cached is not None:
                try:
                    return WhitelistStatus.from_dict(cached)
                except (KeyError, TypeError, ValueError):
                    logger.warning("whitelist_status_cache_entry_invalid", game_id=game_id)

        now = now or utcnow()
        entries = await self.entries.find_active_entries(
            subject_game_id=game_id,
            include_lapsed=True,
            now=now,
        )

        if not entries:
            status = WhitelistStatus(is_whitelisted=False, status="No whitelist")
        elif any(entry.expires_at is None for entry in entries):
            status = WhitelistStatus(
                is_whitelisted=True,
                status="Active (permanent)",
                is_permanent=True,
                entry_count=len(entries),
            )
        else:
            expiration = as_utc(entries[0].granted_at)
            for entry in entries:
                expiration += as_utc(entry.expires_at) - as_utc(entry.granted_at)
            active = expiration > now
            status = WhitelistStatus(
                is_whitelisted=active,
                status="Active" if active else "Expired",
                expiration=expiration,
                entry_count=len(entries),
            )

        if use_cache:
            await self.cache.set_status(game_id, status.to_dict())
        return status

    async def get_sync_status(self, external_id: str) -> dict[str, Any]:
        """Primary link summary plus every role-sourced row of one Discord user."""
        primary = await self.links.find_primary_link(external_id)
        role_entries = await self.entries.list_role_entries(external_id)
        return {
            "external_id": external_id,
            "has_game_link": primary is not None,
            "game_id": primary.game_id if primary else None,
            "link_confidence": primary.confidence if primary else 0.0,
            "link_verified": primary.is_verified if primary else False,
            "role_entries": [
                {
                    "id": entry.id,
                    "tier": entry.access_tier,
                    "grant_type": entry.grant_type.value,
                    "approved": entry.approved,
                    "revoked": entry.revoked,
                    "revoked_reason": entry.revoked_reason,
                    "granted_at": as_utc(entry.granted_at).isoformat(),
                    "revoked_at": as_utc(entry.revoked_at).isoformat()
                    if entry.revoked_at
                    else None,
                }
                for entry in reversed(role_entries)
            ],
        }
