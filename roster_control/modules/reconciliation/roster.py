"""
Roster snapshot fetching.

Large guilds are fetched in chunks. A chunk that keeps failing aborts the
whole fetch with ``RosterFetchError``: callers must never treat a partial
roster as complete, because the departed-member sweep would revoke everyone
who was not fetched.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from roster_control.core.config import Settings, get_settings
from roster_control.core.errors import RosterFetchError
from roster_control.core.logging import get_logger
from roster_control.modules.reconciliation.schemas import RosterMember

logger = get_logger(__name__)


class RosterProvider(Protocol):
    async def fetch_members(
        self,
        guild_id: str,
        *,
        after: str | None,
        limit: int,
    ) -> Sequence[RosterMember]:
        """Return up to ``limit`` members with ids sorting after ``after``."""
        ...


class StaticRosterProvider:
    """Serves a fixed member list in id order, e.g. an exported roster file."""

    def __init__(self, members: Sequence[RosterMember]) -> None:
        self._members = sorted(members, key=lambda m: (len(m.external_id), m.external_id))

    @classmethod
    def from_json_file(cls, path: str | Path, *, guild_id: str | None = None) -> StaticRosterProvider:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = raw.get("members", [])
        members = [RosterMember.model_validate(item) for item in raw]
        if guild_id is not None:
            members = [m.model_copy(update={"guild_id": m.guild_id or guild_id}) for m in members]
        return cls(members)

    async def fetch_members(
        self,
        guild_id: str,
        *,
        after: str | None,
        limit: int,
    ) -> Sequence[RosterMember]:
        start = 0
        if after is not None:
            key = (len(after), after)
            start = next(
                (
                    index
                    for index, member in enumerate(self._members)
                    if (len(member.external_id), member.external_id) > key
                ),
                len(self._members),
            )
        return self._members[start : start + limit]


async def fetch_roster(
    provider: RosterProvider,
    guild_id: str,
    *,
    settings: Settings | None = None,
    retry_base_delay: float = 1.0,
) -> list[RosterMember]:
    """
    Page through the full roster of ``guild_id``.

    Each chunk is retried ``roster_chunk_max_attempts`` times with exponential
    backoff before the fetch is abandoned.
    """
    settings = settings or get_settings()
    limit = settings.roster_chunk_size
    members: dict[str, RosterMember] = {}
    after: str | None = None

    while True:
        chunk: Sequence[RosterMember] | None = None
        for attempt in range(1, settings.roster_chunk_max_attempts + 1):
            try:
                chunk = await provider.fetch_members(guild_id, after=after, limit=limit)
                break
            except Exception as exc:
                logger.warning(
                    "roster_chunk_fetch_failed",
                    guild_id=guild_id,
                    after=after,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt >= settings.roster_chunk_max_attempts:
                    raise RosterFetchError(guild_id, len(members), str(exc)) from exc
                await asyncio.sleep(retry_base_delay * 2 ** (attempt - 1))

        if not chunk:
            break
        for member in chunk:
            members[member.external_id] = member
        if len(chunk) < limit:
            break
        after = chunk[-1].external_id

    logger.info("roster_fetched", guild_id=guild_id, members=len(members))
    return list(members.values())
