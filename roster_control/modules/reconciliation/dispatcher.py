"""
Event dispatch boundary between the chat front-end and the engine.

Nothing raised while handling one event escapes this module, so a single bad
event can never stop processing of the events behind it.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, Iterable

from roster_control.core.logging import get_logger, subject_context
from roster_control.core.notifications import (
    CATEGORY_ROLE_WHITELIST,
    CATEGORY_WHITELIST,
    NotificationSink,
    build_member_left_notification,
    build_role_change_notification,
    notify,
)
from roster_control.modules.reconciliation.engine import (
    ReconciliationEngine,
    SyncResult,
    SyncStatus,
)
from roster_control.modules.reconciliation.schemas import MemberSnapshot, RoleChangeEvent

logger = get_logger(__name__)


def _error_result(external_id: str, tier: str | None, exc: Exception) -> SyncResult:
    return SyncResult(
        external_id=external_id,
        status=SyncStatus.ERROR,
        reason="unexpected",
        tier=tier,
        error=str(exc),
    )


class RoleEventDispatcher:
    def __init__(
        self,
        engine: ReconciliationEngine,
        sink: NotificationSink | None = None,
    ) -> None:
        self.engine = engine
        self.sink = sink if sink is not None else engine.sink

    async def handle_role_change(self, event: RoleChangeEvent) -> SyncResult:
        external_id = event.subject_external_id
        try:
            with subject_context(external_id, trigger="role_change"):
                result = await self.engine.sync_user_role(
                    external_id,
                    event.new_tier,
                    event.member,
                    source="role_change",
                    metadata={"previousTier": event.previous_tier},
                )
        except Exception as exc:
            logger.exception("role_change_dispatch_failed", external_id=external_id)
            return _error_result(external_id, event.new_tier, exc)

        if result.changed and result.status in (SyncStatus.SUCCESS, SyncStatus.NO_IDENTITY_LINK):
            member = event.member
            notify(
                self.sink,
                CATEGORY_ROLE_WHITELIST,
                build_role_change_notification(
                    external_id=external_id,
                    display_name=(member.tag or member.display_name) if member else None,
                    previous_tier=event.previous_tier,
                    new_tier=event.new_tier,
                    game_id=result.game_id,
                    confidence=result.confidence,
                ),
            )
        return result

    async def handle_member_left(
        self,
        external_id: str,
        *,
        guild_id: str | None = None,
        display_name: str | None = None,
    ) -> SyncResult:
        try:
            with subject_context(external_id, trigger="member_left"):
                result = await self.engine.revoke_subject(
                    external_id,
                    reason="user_left_community",
                    action_type="WHITELIST_AUTO_REVOKE",
                    guild_id=guild_id,
                    source="member_left",
                    display_name=display_name,
                )
        except Exception as exc:
            logger.exception("member_left_dispatch_failed", external_id=external_id)
            return _error_result(external_id, None, exc)

        if result.revoked_count:
            notify(
                self.sink,
                CATEGORY_WHITELIST,
                build_member_left_notification(
                    external_id=external_id,
                    display_name=display_name,
                    revoked_count=result.revoked_count,
                    game_ids=[entry.get("gameId") for entry in result.revoked_entries],
                    tiers=[entry["tier"] for entry in result.revoked_entries],
                ),
            )
        return result

    async def handle_link_changed(
        self,
        external_id: str,
        current_tier: str | None,
        member: MemberSnapshot | None = None,
    ) -> SyncResult:
        """Re-run reconciliation after a link was created or its confidence changed."""
        try:
            return await self.engine.sync_user_role(
                external_id,
                current_tier,
                member,
                source="link_change",
            )
        except Exception as exc:
            logger.exception("link_change_dispatch_failed", external_id=external_id)
            return _error_result(external_id, current_tier, exc)

    async def process_events(
        self,
        events: Iterable[RoleChangeEvent] | AsyncIterable[RoleChangeEvent],
    ) -> list[SyncResult]:
        """Handle events in arrival order; failures are collected, not raised."""
        results: list[SyncResult] = []
        if isinstance(events, AsyncIterable):
            async for event in events:
                results.append(await self.handle_role_change(event))
        else:
            for event in events:
                results.append(await self.handle_role_change(event))
        return results
