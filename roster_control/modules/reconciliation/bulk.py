"""
Bulk replay of the reconciliation engine over a guild roster.

``bulk_sync`` catches up after downtime (startup, missed events).
``cleanup_departed`` revokes role-sourced access of subjects who are no longer
in the guild and runs periodically through ``run_periodic_cleanup``, because
a single missed leave event would otherwise keep access alive forever.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from roster_control.core.config import Settings
from roster_control.core.errors import RosterFetchError
from roster_control.core.logging import get_logger
from roster_control.core.notifications import (
    CATEGORY_WHITELIST,
    build_cleanup_summary_notification,
    notify,
)
from roster_control.modules.reconciliation.engine import (
    ReconciliationEngine,
    SyncResult,
    SyncStatus,
)
from roster_control.modules.reconciliation.roster import RosterProvider, fetch_roster
from roster_control.modules.reconciliation.schemas import RosterMember

logger = get_logger(__name__)


@dataclass(slots=True)
class BulkSyncSummary:
    dry_run: bool
    total_members: int
    members_to_sync: int
    groups: dict[str, int] = field(default_factory=dict)
    stale_members: int = 0
    success: int = 0
    no_identity_link: int = 0
    security_blocked: int = 0
    skipped: int = 0
    error: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CleanupSummary:
    guild_id: str | None
    roster_size: int
    tracked_subjects: int = 0
    departed: int = 0
    subjects_revoked: int = 0
    entries_revoked: int = 0
    skipped: bool = False
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BulkSyncDriver:
    def __init__(
        self,
        engine: ReconciliationEngine,
        provider: RosterProvider | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.engine = engine
        self.provider = provider
        self._settings = settings or engine.settings

    # ------------------------------------------------------------------
    # Bulk sync
    # ------------------------------------------------------------------

    async def bulk_sync(
        self,
        roster: Sequence[RosterMember],
        *,
        dry_run: bool = False,
        guild_id: str | None = None,
        include_stale: bool = True,
    ) -> BulkSyncSummary:
        """
        Reconcile every roster member that holds a tracked tier.

        With ``include_stale`` members present without a tier but still owning
        unrevoked role rows are reconciled to "no tier" as well. A dry run only
        counts and writes nothing.
        """
        started = time.monotonic()
        humans = [member for member in roster if not member.is_bot]
        to_sync = [member for member in humans if member.tier]
        groups = dict(Counter(member.tier for member in to_sync if member.tier))

        summary = BulkSyncSummary(
            dry_run=dry_run,
            total_members=len(roster),
            members_to_sync=len(to_sync),
            groups=groups,
        )

        if dry_run:
            logger.info(
                "bulk_sync_dry_run",
                guild_id=guild_id,
                total_members=summary.total_members,
                members_to_sync=summary.members_to_sync,
                groups=groups,
            )
            return summary

        work: list[RosterMember] = list(to_sync)
        if include_stale:
            tracked = await self.engine.subjects_with_role_entries()
            stale = [m for m in humans if not m.tier and m.external_id in tracked]
            summary.stale_members = len(stale)
            work.extend(stale)

        batch_size = self._settings.bulk_sync_batch_size
        pause = self._settings.bulk_sync_batch_pause_seconds
        logger.info(
            "bulk_sync_started",
            guild_id=guild_id,
            members=len(work),
            batch_size=batch_size,
        )

        for offset in range(0, len(work), batch_size):
            batch = work[offset : offset + batch_size]
            results = await asyncio.gather(
                *(self._sync_member(member, guild_id) for member in batch),
                return_exceptions=True,
            )
            for member, result in zip(batch, results, strict=True):
                self._tally(summary, member, result)

            if offset + batch_size < len(work) and pause > 0:
                await asyncio.sleep(pause)

        summary.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "bulk_sync_completed",
            guild_id=guild_id,
            success=summary.success,
            no_identity_link=summary.no_identity_link,
            security_blocked=summary.security_blocked,
            skipped=summary.skipped,
            errors=summary.error,
            duration_seconds=summary.duration_seconds,
        )
        return summary

    async def _sync_member(self, member: RosterMember, guild_id: str | None) -> SyncResult:
        snapshot = member.snapshot()
        if snapshot.guild_id is None and guild_id is not None:
            snapshot = snapshot.model_copy(update={"guild_id": guild_id})
        return await self.engine.sync_user_role(
            member.external_id,
            member.tier,
            snapshot,
            source="bulk_sync",
        )

    @staticmethod
    def _tally(
        summary: BulkSyncSummary,
        member: RosterMember,
        result: SyncResult | BaseException,
    ) -> None:
        if isinstance(result, BaseException):
            summary.error += 1
            summary.errors.append({"external_id": member.external_id, "error": str(result)})
            logger.error(
                "bulk_sync_member_failed",
                external_id=member.external_id,
                error=str(result),
            )
            return

        if result.status is SyncStatus.SUCCESS:
            summary.success += 1
        elif result.status is SyncStatus.NO_IDENTITY_LINK:
            summary.no_identity_link += 1
        elif result.status is SyncStatus.SECURITY_BLOCKED:
            summary.security_blocked += 1
        elif result.status is SyncStatus.SKIPPED:
            summary.skipped += 1
        else:
            summary.error += 1
            summary.errors.append(
                {
                    "external_id": member.external_id,
                    "error": result.error or result.reason,
                    "recoverable": result.recoverable,
                }
            )

    async def bulk_sync_guild(self, guild_id: str, *, dry_run: bool = False) -> BulkSyncSummary:
        """Fetch the full roster, then bulk sync it. Raises ``RosterFetchError``."""
        roster = await self.load_roster(guild_id)
        return await self.bulk_sync(roster, dry_run=dry_run, guild_id=guild_id)

    # ------------------------------------------------------------------
    # Departed-member cleanup
    # ------------------------------------------------------------------

    async def cleanup_departed(
        self,
        roster: Sequence[RosterMember],
        *,
        guild_id: str | None = None,
    ) -> CleanupSummary:
        """Revoke role-sourced rows of every subject missing from ``roster``."""
        summary = CleanupSummary(guild_id=guild_id, roster_size=len(roster))
        if not roster:
            logger.warning("departed_cleanup_skipped_empty_roster", guild_id=guild_id)
            summary.skipped = True
            return summary

        present = {member.external_id for member in roster}
        tracked = await self.engine.subjects_with_role_entries()
        departed = sorted(tracked - present)
        summary.tracked_subjects = len(tracked)
        summary.departed = len(departed)

        for external_id in departed:
            result = await self.engine.revoke_subject(
                external_id,
                reason="user_left_community",
                action_type="WHITELIST_PERIODIC_CLEANUP",
                guild_id=guild_id,
                source="periodic_cleanup",
            )
            if not result.success:
                summary.errors.append(
                    {"external_id": external_id, "error": result.error or result.reason}
                )
                continue
            if result.revoked_count:
                summary.subjects_revoked += 1
                summary.entries_revoked += result.revoked_count

        logger.info(
            "departed_cleanup_completed",
            guild_id=guild_id,
            roster_size=summary.roster_size,
            departed=summary.departed,
            entries_revoked=summary.entries_revoked,
            errors=len(summary.errors),
        )
        if summary.entries_revoked:
            notify(
                self.engine.sink,
                CATEGORY_WHITELIST,
                build_cleanup_summary_notification(
                    guild_id=guild_id,
                    roster_size=summary.roster_size,
                    subjects_revoked=summary.subjects_revoked,
                    entries_revoked=summary.entries_revoked,
                    errors=len(summary.errors),
                ),
            )
        return summary

    async def load_roster(self, guild_id: str) -> list[RosterMember]:
        if self.provider is None:
            raise RuntimeError("BulkSyncDriver has no roster provider")
        return await fetch_roster(self.provider, guild_id, settings=self._settings)

    async def run_periodic_cleanup(
        self,
        guild_id: str,
        *,
        interval: float | None = None,
        max_cycles: int = 0,
        stop_event: asyncio.Event | None = None,
    ) -> int:
        """
        Sweep departed members every ``interval`` seconds until stopped.

        A cycle whose roster fetch fails is skipped entirely. ``max_cycles``
        greater than zero bounds the loop (used by tests). Returns the number
        of cycles run.
        """
        interval = interval if interval is not None else self._settings.cleanup_interval_seconds
        stop = stop_event or asyncio.Event()
        cycle = 0
        logger.info("departed_cleanup_loop_started", guild_id=guild_id, interval=interval)

        while not stop.is_set():
            cycle += 1
            try:
                roster = await self.load_roster(guild_id)
            except RosterFetchError as exc:
                logger.warning(
                    "departed_cleanup_cycle_skipped",
                    guild_id=guild_id,
                    cycle=cycle,
                    fetched=exc.fetched,
                    reason=exc.reason,
                )
            else:
                try:
                    await self.cleanup_departed(roster, guild_id=guild_id)
                except Exception:
                    logger.exception("departed_cleanup_cycle_failed", guild_id=guild_id, cycle=cycle)

            if max_cycles > 0 and cycle >= max_cycles:
                break

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=interval)

        logger.info("departed_cleanup_loop_stopped", guild_id=guild_id, cycles=cycle)
        return cycle
