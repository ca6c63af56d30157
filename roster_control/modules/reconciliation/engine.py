"""
Role-to-whitelist reconciliation engine.

Brings a subject's role-sourced whitelist entries into agreement with their
current tier and identity-link confidence. Each reconciliation runs as one
database transaction that locks the subject's link rows and role rows; on
PostgreSQL a transaction-scoped advisory lock on the subject key additionally
serializes reconciliations that would otherwise only race on inserts.

The in-process in-flight set only short-circuits exact concurrent duplicates
within one process. Correctness comes from the transaction.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster_control.core.audit import emit_audit_event, emit_detached_audit_event
from roster_control.core.cache import WhitelistStatusCache
from roster_control.core.config import Settings, get_settings
from roster_control.core.errors import RosterControlError
from roster_control.core.logging import get_logger
from roster_control.core.notifications import (
    CATEGORY_SECURITY,
    NotificationPayload,
    NotificationSink,
    build_security_upgrade_notification,
    notify,
)
from roster_control.db.models import (
    AuditSeverity,
    EntrySource,
    IdentityLink,
    LinkSource,
    WhitelistEntry,
    utcnow,
)
from roster_control.modules.identity.store import (
    IdentityLinkStore,
    LinkWriteResult,
    link_snapshot,
    validate_confidence,
)
from roster_control.modules.reconciliation.schemas import MemberSnapshot
from roster_control.modules.whitelist.policy import (
    REQUIRED_CONFIDENCE,
    BlockReason,
    decide,
    grant_type_for,
    is_elevated,
)
from roster_control.modules.whitelist.store import (
    SECURITY_ACTOR,
    WhitelistStore,
    entry_snapshot,
    most_recent_first,
)

logger = get_logger(__name__)

T = TypeVar("T")

# SQLSTATEs worth retrying: serialization failure, deadlock, lock not available
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "55P03"})

_BLOCK_FLAGS = (
    "securityBlocked",
    "blockReason",
    "actualConfidence",
    "requiredConfidence",
    "requiresIdentityLink",
)


class SyncStatus(str, Enum):
    SUCCESS = "success"
    NO_IDENTITY_LINK = "no_identity_link"
    SECURITY_BLOCKED = "security_blocked"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(slots=True)
class SyncResult:
    """Outcome of one reconciliation. Expected outcomes are never raised."""

    external_id: str
    status: SyncStatus
    reason: str | None = None
    tier: str | None = None
    game_id: str | None = None
    confidence: float | None = None
    changed: bool = False
    entry_id: int | None = None
    upgraded_entry_ids: list[int] = field(default_factory=list)
    duplicates_revoked: int = 0
    revoked_count: int = 0
    revoked_entries: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    recoverable: bool = False

    @property
    def success(self) -> bool:
        return self.status in (SyncStatus.SUCCESS, SyncStatus.NO_IDENTITY_LINK, SyncStatus.SKIPPED)


@dataclass(slots=True)
class _Outcome:
    result: SyncResult
    dirty: bool = False
    notifications: list[tuple[str, NotificationPayload]] = field(default_factory=list)


@dataclass(slots=True)
class _SubjectState:
    """Locked view of one subject inside a reconciliation transaction."""

    db: AsyncSession
    store: WhitelistStore
    external_id: str
    tier: str | None
    member: MemberSnapshot | None
    source: str
    now: datetime
    link: IdentityLink | None
    rows: list[WhitelistEntry]
    result: SyncResult
    notifications: list[tuple[str, NotificationPayload]] = field(default_factory=list)

    @property
    def game_id(self) -> str | None:
        return self.link.game_id if self.link is not None else None

    @property
    def guild_id(self) -> str | None:
        return self.member.guild_id if self.member is not None else None

    @property
    def display_name(self) -> str | None:
        if self.member is None:
            return None
        return self.member.display_name or self.member.tag

    def granting(self) -> list[WhitelistEntry]:
        return [row for row in self.rows if row.is_granting]

    def placeholders(self) -> list[WhitelistEntry]:
        return [row for row in self.rows if row.is_placeholder]

    def unrevoked(self) -> list[WhitelistEntry]:
        return [row for row in self.rows if not row.revoked]


def is_transient_conflict(exc: BaseException) -> bool:
    """True for lock conflicts that a fresh transaction attempt can resolve."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


def _failure_reason(exc: BaseException) -> str:
    if is_transient_conflict(exc):
        return "transaction_conflict"
    if isinstance(exc, DBAPIError | OSError):
        return "persistence_unavailable"
    return "unexpected"


class ReconciliationEngine:
    """Single entry point for every write to identity links and role-sourced entries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        sink: NotificationSink | None = None,
        cache: WhitelistStatusCache | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._sink = sink
        self._cache = cache
        self._in_flight: set[tuple[str, str | None]] = set()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def sink(self) -> NotificationSink | None:
        return self._sink

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    async def _lock_subject(self, session: AsyncSession, external_id: str) -> None:
        if session.get_bind().dialect.name == "postgresql":
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"roster_subject:{external_id}"},
            )

    async def _in_transaction(
        self,
        external_id: str,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """
        Run ``work`` in a subject-locked transaction.

        Transient lock conflicts restart the whole transaction with
        exponential backoff. Anything else, or the last conflict, is raised.
        """
        max_attempts = self._settings.reconcile_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        await self._lock_subject(session, external_id)
                        return await work(session)
            except DBAPIError as exc:
                if not is_transient_conflict(exc) or attempt >= max_attempts:
                    raise
                delay = self._settings.reconcile_retry_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "reconciliation_conflict_retry",
                    external_id=external_id,
                    attempt=attempt,
                    delay=delay,
                )
                await asyncio.sleep(delay)
        raise RosterControlError("reconciliation made no attempts")

    async def _finish(self, outcome: _Outcome) -> SyncResult:
        """Post-commit side effects: cache invalidation, then notifications."""
        if outcome.dirty and self._cache is not None:
            await self._cache.invalidate()
        for category, payload in outcome.notifications:
            notify(self._sink, category, payload)
        return outcome.result

    async def _fail(
        self,
        exc: BaseException,
        *,
        external_id: str,
        tier: str | None,
        member: MemberSnapshot | None,
        source: str,
        metadata: dict[str, Any],
        action: str,
    ) -> SyncResult:
        reason = _failure_reason(exc)
        logger.error(
            "reconciliation_failed",
            action=action,
            external_id=external_id,
            tier=tier,
            source=source,
            reason=reason,
            error=str(exc),
            exc_info=reason == "unexpected",
        )
        await emit_detached_audit_event(
            self._session_factory,
            action_type="ROLE_SYNC_ERROR",
            description=f"Role sync failed: {exc}",
            target_id=external_id,
            target_name=(member.tag or member.display_name) if member else None,
            guild_id=member.guild_id if member else None,
            metadata={
                "action": action,
                "error": str(exc),
                "reason": reason,
                "newTier": tier,
                "source": source,
                **metadata,
            },
            severity=AuditSeverity.ERROR,
        )
        return SyncResult(
            external_id=external_id,
            status=SyncStatus.ERROR,
            reason=reason,
            tier=tier,
            error=str(exc),
            recoverable=reason == "transaction_conflict",
        )

    # ------------------------------------------------------------------
    # Single-user reconciliation
    # ------------------------------------------------------------------

    async def sync_user_role(
        self,
        external_id: str,
        new_tier: str | None,
        member: MemberSnapshot | None = None,
        *,
        source: str = "role_sync",
        metadata: dict[str, Any] | None = None,
    ) -> SyncResult:
        """
        Reconcile one subject's role-sourced entries with ``new_tier``.

        ``new_tier=None`` means the subject holds no tracked role. ``member``
        carries the tiers the subject held when the triggering event was
        produced; without it no blocked entry is ever upgraded.
        """
        metadata = dict(metadata or {})
        key = (external_id, new_tier)
        if key in self._in_flight:
            logger.debug("role_sync_skipped_in_flight", external_id=external_id, tier=new_tier)
            return SyncResult(
                external_id=external_id,
                status=SyncStatus.SKIPPED,
                reason="skipped_in_flight",
                tier=new_tier,
            )

        self._in_flight.add(key)
        try:

            async def work(session: AsyncSession) -> _Outcome:
                return await self._reconcile(session, external_id, new_tier, member, source, metadata)

            try:
                outcome = await self._in_transaction(external_id, work)
            except Exception as exc:
                return await self._fail(
                    exc,
                    external_id=external_id,
                    tier=new_tier,
                    member=member,
                    source=source,
                    metadata=metadata,
                    action="sync_user_role",
                )
            return await self._finish(outcome)
        finally:
            self._in_flight.discard(key)

    async def _reconcile(
        self,
        session: AsyncSession,
        external_id: str,
        new_tier: str | None,
        member: MemberSnapshot | None,
        source: str,
        metadata: dict[str, Any],
    ) -> _Outcome:
        links = IdentityLinkStore(session)
        store = WhitelistStore(session)

        link = await links.find_primary_link(external_id, for_update=True)
        rows = await store.lock_role_entries(external_id)
        before = [entry_snapshot(row) for row in rows if not row.revoked or row.is_security_blocked]

        state = _SubjectState(
            db=session,
            store=store,
            external_id=external_id,
            tier=new_tier,
            member=member,
            source=source,
            now=utcnow(),
            link=link,
            rows=rows,
            result=SyncResult(
                external_id=external_id,
                status=SyncStatus.SUCCESS,
                tier=new_tier,
                game_id=link.game_id if link else None,
                confidence=link.confidence if link else None,
            ),
        )

        base_tier = self._settings.base_tier
        decision = decide(new_tier, link, base_tier=base_tier)

        if new_tier is None:
            await self._apply_removal(state, reason="role_removed")
        elif not decision.allowed and decision.reason is BlockReason.NO_IDENTITY_LINK:
            await self._apply_unlinked(state, new_tier)
        elif link is None:
            # Base tier without a link: nothing can be whitelisted yet
            for row in state.unrevoked():
                if row.access_tier != new_tier:
                    self._revoke(state, row, reason="role_changed")
            state.result.status = SyncStatus.NO_IDENTITY_LINK
            state.result.reason = "no_identity_link"
        elif not decision.allowed:
            await self._apply_security_block(state, new_tier, link)
        else:
            await self._upgrade_pass(state)
            await self._apply_tier(state, new_tier, link)

        state.result.changed = store.dirty
        outcome_label = "noop" if not store.dirty else state.result.reason or state.result.status.value
        if not store.dirty:
            logger.debug("role_sync_noop", external_id=external_id, tier=new_tier)

        after = [entry_snapshot(row) for row in state.rows if not row.revoked or row.is_security_blocked]
        await emit_audit_event(
            db_session=session,
            action_type="ROLE_SYNC",
            description=f"Role sync: {new_tier or 'no group'} ({source})",
            target_id=external_id,
            target_name=(member.tag or member.display_name) if member else None,
            guild_id=state.guild_id,
            before_state={"entries": before, "link": link_snapshot(link)},
            after_state={"entries": after},
            metadata={
                "outcome": outcome_label,
                "status": state.result.status.value,
                "newTier": new_tier,
                "elevated": is_elevated(new_tier, base_tier=base_tier),
                "gameId": state.game_id,
                "confidence": link.confidence if link else None,
                "source": source,
                **metadata,
            },
            severity=AuditSeverity.INFO,
        )

        return _Outcome(
            result=state.result,
            dirty=store.dirty,
            notifications=state.notifications,
        )

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _revoke(
        self,
        state: _SubjectState,
        row: WhitelistEntry,
        *,
        reason: str,
        flags: dict[str, Any] | None = None,
    ) -> None:
        state.store.revoke_entry(
            row,
            reason=reason,
            source=state.source,
            flags=flags,
            now=state.now,
        )
        state.result.revoked_count += 1
        state.result.revoked_entries.append(entry_snapshot(row))

    async def _apply_removal(self, state: _SubjectState, *, reason: str) -> None:
        for row in state.unrevoked():
            self._revoke(state, row, reason=reason)
        if state.result.revoked_count:
            logger.info(
                "role_entries_revoked",
                external_id=state.external_id,
                count=state.result.revoked_count,
                reason=reason,
            )
        state.result.reason = reason if state.result.revoked_count else "nothing_to_revoke"

    async def _apply_unlinked(self, state: _SubjectState, tier: str) -> None:
        for row in state.granting():
            self._revoke(state, row, reason="no_identity_link")

        placeholders = most_recent_first(state.placeholders())
        if placeholders:
            keep = placeholders[0]
            for extra in placeholders[1:]:
                self._revoke(state, extra, reason="duplicate", flags={"revokedAsDuplicate": True})
                state.result.duplicates_revoked += 1
            if keep.access_tier != tier or keep.subject_game_id is not None:
                previous = keep.access_tier
                keep.access_tier = tier
                keep.grant_type = grant_type_for(tier, base_tier=self._settings.base_tier)
                keep.subject_game_id = None
                keep.reason = f"Role-based: {tier} (awaiting identity link)"
                state.store.record_transition(
                    keep,
                    "placeholder_refreshed",
                    source=state.source,
                    flags={"requiresIdentityLink": True, "tierRequested": tier},
                    now=state.now,
                    previous_tier=previous,
                )
        else:
            keep = await state.store.create_entry(
                subject_external_id=state.external_id,
                subject_game_id=None,
                subject_name=state.display_name,
                access_tier=tier,
                grant_type=grant_type_for(tier, base_tier=self._settings.base_tier),
                source=EntrySource.ROLE,
                approved=False,
                reason=f"Role-based: {tier} (awaiting identity link)",
                flags={"requiresIdentityLink": True, "tierRequested": tier},
                transition="placeholder_created",
                history_source=state.source,
                now=state.now,
            )
            state.rows.append(keep)
            logger.info("unlinked_placeholder_created", external_id=state.external_id, tier=tier)

        state.result.status = SyncStatus.NO_IDENTITY_LINK
        state.result.reason = "no_identity_link"
        state.result.entry_id = keep.id

    async def _apply_security_block(
        self, state: _SubjectState, tier: str, link: IdentityLink
    ) -> None:
        confidence = link.confidence
        revoked_reason = (
            f"Security block: insufficient link confidence "
            f"({confidence:.2f}/{REQUIRED_CONFIDENCE:.1f})"
        )
        flags = {
            "securityBlocked": True,
            "blockReason": BlockReason.INSUFFICIENT_CONFIDENCE.value,
            "actualConfidence": confidence,
            "requiredConfidence": REQUIRED_CONFIDENCE,
        }

        for row in state.granting():
            self._revoke(state, row, reason="insufficient_confidence")

        candidates = most_recent_first(
            row for row in state.rows if row.is_placeholder or row.is_security_blocked
        )
        target = candidates[0] if candidates else None
        for extra in candidates[1:]:
            if extra.is_placeholder:
                self._revoke(state, extra, reason="superseded", flags={"superseded": True})
            else:
                state.store.record_transition(
                    extra,
                    "superseded",
                    source=state.source,
                    flags={"superseded": True},
                    now=state.now,
                )

        unchanged = (
            target is not None
            and target.is_security_blocked
            and target.access_tier == tier
            and target.subject_game_id == link.game_id
            and (target.metadata_ or {}).get("actualConfidence") == confidence
        )

        if target is None:
            target = await state.store.create_entry(
                subject_external_id=state.external_id,
                subject_game_id=link.game_id,
                subject_name=state.display_name,
                access_tier=tier,
                grant_type=grant_type_for(tier, base_tier=self._settings.base_tier),
                source=EntrySource.ROLE,
                approved=False,
                revoked=True,
                reason=f"Role-based: {tier}",
                revoked_by=SECURITY_ACTOR,
                revoked_reason=revoked_reason,
                flags=flags,
                transition="security_blocked",
                history_source=state.source,
                now=state.now,
            )
            state.rows.append(target)
        elif not unchanged:
            previous = entry_snapshot(target)
            target.access_tier = tier
            target.grant_type = grant_type_for(tier, base_tier=self._settings.base_tier)
            target.subject_game_id = link.game_id
            target.approved = False
            target.revoked = True
            target.revoked_at = state.now
            target.revoked_by = SECURITY_ACTOR
            target.revoked_reason = revoked_reason
            state.store.record_transition(
                target,
                "security_blocked",
                source=state.source,
                flags=flags,
                clear=("requiresIdentityLink", "tierRequested", "superseded"),
                now=state.now,
                previous_state="placeholder" if not previous["revoked"] else "security_blocked",
            )

        state.result.status = SyncStatus.SECURITY_BLOCKED
        state.result.reason = "security_blocked_insufficient_confidence"
        state.result.entry_id = target.id

        if unchanged and not state.store.dirty:
            return

        logger.warning(
            "security_block",
            external_id=state.external_id,
            game_id=link.game_id,
            tier=tier,
            confidence=confidence,
            required=REQUIRED_CONFIDENCE,
        )
        await emit_audit_event(
            db_session=state.db,
            action_type="SECURITY_BLOCK",
            description=(
                f"Blocked {tier} whitelist: link confidence {confidence:.2f} "
                f"below required {REQUIRED_CONFIDENCE:.1f}"
            ),
            target_id=state.external_id,
            target_name=state.display_name,
            guild_id=state.guild_id,
            after_state=entry_snapshot(target),
            metadata={
                "gameId": link.game_id,
                "tier": tier,
                "actualConfidence": confidence,
                "requiredConfidence": REQUIRED_CONFIDENCE,
                "source": state.source,
            },
            severity=AuditSeverity.WARNING,
        )

    async def _upgrade_pass(self, state: _SubjectState) -> None:
        """Approve a withheld entry whose tier the subject still holds."""
        link = state.link
        if link is None or link.confidence < REQUIRED_CONFIDENCE or state.member is None:
            return

        held = state.member.held_tiers
        candidates = most_recent_first(
            row
            for row in state.rows
            if (row.is_placeholder or row.is_security_blocked) and row.access_tier in held
        )
        if not candidates:
            return

        chosen = candidates[0]
        previous = entry_snapshot(chosen)
        previous_state = "security_blocked" if chosen.is_security_blocked else "unlinked_placeholder"

        # The upgraded entry becomes the subject's only grant
        for row in state.granting():
            self._revoke(state, row, reason="superseded", flags={"superseded": True})

        chosen.approved = True
        chosen.revoked = False
        chosen.revoked_at = None
        chosen.revoked_by = None
        chosen.revoked_reason = None
        chosen.subject_game_id = link.game_id
        state.store.record_transition(
            chosen,
            "upgraded",
            source=state.source,
            flags={
                "upgraded": True,
                "upgradedFrom": previous_state,
                "upgradedAt": state.now.isoformat(),
                "confidenceAtUpgrade": link.confidence,
            },
            clear=_BLOCK_FLAGS + ("tierRequested",),
            now=state.now,
        )
        state.result.upgraded_entry_ids.append(chosen.id)

        for extra in candidates[1:]:
            if extra.is_placeholder:
                self._revoke(state, extra, reason="duplicate", flags={"revokedAsDuplicate": True})
            else:
                state.store.record_transition(
                    extra,
                    "superseded",
                    source=state.source,
                    flags={"superseded": True, "revokedAsDuplicate": True},
                    now=state.now,
                )
            state.result.duplicates_revoked += 1

        logger.warning(
            "security_upgrade",
            external_id=state.external_id,
            entry_id=chosen.id,
            tier=chosen.access_tier,
            game_id=link.game_id,
            upgraded_from=previous_state,
        )
        await emit_audit_event(
            db_session=state.db,
            action_type="SECURITY_UPGRADE",
            description=(
                f"Upgraded {chosen.access_tier} whitelist entry from {previous_state} "
                f"after link confidence reached {link.confidence:.2f}"
            ),
            target_id=state.external_id,
            target_name=state.display_name,
            guild_id=state.guild_id,
            before_state=previous,
            after_state=entry_snapshot(chosen),
            metadata={
                "entryId": chosen.id,
                "gameId": link.game_id,
                "confidence": link.confidence,
                "upgradedFrom": previous_state,
                "source": state.source,
            },
            severity=AuditSeverity.WARNING,
        )
        state.notifications.append(
            (
                CATEGORY_SECURITY,
                build_security_upgrade_notification(
                    external_id=state.external_id,
                    display_name=state.display_name,
                    tier=chosen.access_tier,
                    game_id=link.game_id,
                    confidence=link.confidence,
                    entry_id=chosen.id,
                    previous_state=previous_state,
                ),
            )
        )

    async def _apply_tier(self, state: _SubjectState, tier: str, link: IdentityLink) -> None:
        base_tier = self._settings.base_tier

        active = most_recent_first(state.granting())
        if not active:
            keep = await state.store.create_entry(
                subject_external_id=state.external_id,
                subject_game_id=link.game_id,
                subject_name=state.display_name,
                access_tier=tier,
                grant_type=grant_type_for(tier, base_tier=base_tier),
                source=EntrySource.ROLE,
                approved=True,
                reason=f"Role-based: {tier}",
                flags={"roleSync": True},
                transition="created",
                history_source=state.source,
                now=state.now,
            )
            state.rows.append(keep)
            logger.info(
                "role_entry_created",
                external_id=state.external_id,
                entry_id=keep.id,
                tier=tier,
            )
        else:
            keep = active[0]
            duplicates = active[1:]
            if duplicates:
                for extra in duplicates:
                    self._revoke(
                        state, extra, reason="duplicate", flags={"revokedAsDuplicate": True}
                    )
                state.result.duplicates_revoked += len(duplicates)
                logger.warning(
                    "duplicate_entry_detected",
                    external_id=state.external_id,
                    kept_entry_id=keep.id,
                    revoked_entry_ids=[extra.id for extra in duplicates],
                )
                await emit_audit_event(
                    db_session=state.db,
                    action_type="DUPLICATE_ENTRY_DETECTED",
                    description=(
                        f"Found {len(active)} active role entries; kept #{keep.id}, "
                        f"revoked {len(duplicates)} as duplicate"
                    ),
                    target_id=state.external_id,
                    target_name=state.display_name,
                    guild_id=state.guild_id,
                    metadata={
                        "keptEntryId": keep.id,
                        "revokedEntryIds": [extra.id for extra in duplicates],
                        "source": state.source,
                    },
                    severity=AuditSeverity.WARNING,
                )

            if keep.access_tier != tier:
                previous_tier = keep.access_tier
                keep.access_tier = tier
                keep.grant_type = grant_type_for(tier, base_tier=base_tier)
                keep.reason = f"Role-based: {tier}"
                state.store.record_transition(
                    keep,
                    "tier_changed",
                    source=state.source,
                    flags={"previousTier": previous_tier},
                    now=state.now,
                    previous_tier=previous_tier,
                    tier=tier,
                )
            if keep.subject_game_id != link.game_id:
                previous_game_id = keep.subject_game_id
                keep.subject_game_id = link.game_id
                state.store.record_transition(
                    keep,
                    "game_id_refreshed",
                    source=state.source,
                    now=state.now,
                    previous_game_id=previous_game_id,
                    game_id=link.game_id,
                )

        for row in state.placeholders():
            self._revoke(state, row, reason="superseded", flags={"superseded": True})

        state.result.status = SyncStatus.SUCCESS
        state.result.reason = "synced"
        state.result.entry_id = keep.id

    # ------------------------------------------------------------------
    # Departures
    # ------------------------------------------------------------------

    async def subjects_with_role_entries(self) -> set[str]:
        async with self._session_factory() as session:
            return await WhitelistStore(session).subjects_with_role_entries()

    async def revoke_subject(
        self,
        external_id: str,
        *,
        reason: str = "user_left_community",
        action_type: str = "WHITELIST_AUTO_REVOKE",
        guild_id: str | None = None,
        source: str = "member_left",
        display_name: str | None = None,
    ) -> SyncResult:
        """Revoke every unrevoked role-sourced row of one subject; other grants stay."""

        async def work(session: AsyncSession) -> _Outcome:
            store = WhitelistStore(session)
            rows = await store.lock_role_entries(external_id)
            state = _SubjectState(
                db=session,
                store=store,
                external_id=external_id,
                tier=None,
                member=None,
                source=source,
                now=utcnow(),
                link=None,
                rows=rows,
                result=SyncResult(external_id=external_id, status=SyncStatus.SUCCESS),
            )
            before = [entry_snapshot(row) for row in state.unrevoked()]
            await self._apply_removal(state, reason=reason)
            state.result.changed = store.dirty
            if store.dirty:
                await emit_audit_event(
                    db_session=session,
                    action_type=action_type,
                    description=(
                        f"Revoked {state.result.revoked_count} role-based whitelist "
                        f"entries: {reason}"
                    ),
                    target_id=external_id,
                    target_name=display_name,
                    guild_id=guild_id,
                    before_state={"entries": before},
                    after_state={"entries": state.result.revoked_entries},
                    metadata={
                        "reason": reason,
                        "revokedCount": state.result.revoked_count,
                        "source": source,
                        "note": "Manual grants (donations, seeding, etc.) preserved",
                    },
                    severity=AuditSeverity.INFO,
                )
            return _Outcome(result=state.result, dirty=store.dirty)

        try:
            outcome = await self._in_transaction(external_id, work)
        except Exception as exc:
            return await self._fail(
                exc,
                external_id=external_id,
                tier=None,
                member=None,
                source=source,
                metadata={"reason": reason, "guildId": guild_id},
                action="revoke_subject",
            )
        return await self._finish(outcome)

    # ------------------------------------------------------------------
    # Identity links
    # ------------------------------------------------------------------

    async def record_identity_link(
        self,
        external_id: str,
        game_id: str,
        confidence: float | None,
        source: LinkSource,
        *,
        force: bool = False,
        username: str | None = None,
        actor_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LinkWriteResult:
        """
        Create or strengthen a link and audit it.

        Whitelist entries are not touched: the next reconciliation of the
        subject picks up the new confidence. Raises on invalid confidence and
        on persistence failures.
        """
        if confidence is not None:
            validate_confidence(confidence)

        async def work(session: AsyncSession) -> LinkWriteResult:
            store = IdentityLinkStore(session)
            result = await store.create_or_update_link(
                external_id,
                game_id,
                confidence,
                source,
                force=force,
                username=username,
                metadata=metadata,
            )
            if result.created or result.confidence_changed:
                await emit_audit_event(
                    db_session=session,
                    action_type="LINK_CREATED" if result.created else "LINK_UPDATED",
                    description=(
                        f"Linked {game_id} at confidence {result.link.confidence:.2f} "
                        f"({source.value})"
                    ),
                    actor_type="user" if actor_id else "system",
                    actor_id=actor_id or "ROLE_SYNC_SERVICE",
                    target_id=external_id,
                    target_name=username,
                    before_state=(
                        {"confidence": result.previous_confidence}
                        if result.previous_confidence is not None
                        else None
                    ),
                    after_state=link_snapshot(result.link),
                    metadata={"source": source.value, "forced": force},
                    severity=AuditSeverity.INFO,
                )
            return result

        result = await self._in_transaction(external_id, work)
        logger.info(
            "identity_link_recorded",
            external_id=external_id,
            game_id=game_id,
            confidence=result.link.confidence,
            created=result.created,
        )
        return result

    async def remove_identity_link(
        self,
        external_id: str,
        game_id: str,
        *,
        actor_id: str | None = None,
    ) -> bool:
        """Administrative unlink. Returns False when the link does not exist."""

        async def work(session: AsyncSession) -> bool:
            removed = await IdentityLinkStore(session).remove_link(external_id, game_id)
            if removed:
                await emit_audit_event(
                    db_session=session,
                    action_type="LINK_REMOVED",
                    description=f"Removed link to {game_id}",
                    actor_type="user" if actor_id else "system",
                    actor_id=actor_id or "ROLE_SYNC_SERVICE",
                    target_id=external_id,
                    metadata={"gameId": game_id},
                    severity=AuditSeverity.WARNING,
                )
            return removed

        return await self._in_transaction(external_id, work)
