"""
Audit trail for reconciliation decisions and identity-link changes.

Provides ``emit_audit_event()`` for recording a decision inside the caller's
transaction, and ``emit_detached_audit_event()`` for failures, which must be
recorded in a **separate short-lived session** so the record survives the
rollback of the transaction that failed.

Audit records are append-only: nothing in this package updates or deletes them.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster_control.core.logging import get_logger
from roster_control.db.models import AuditRecord, AuditSeverity

logger = get_logger(__name__)

SYSTEM_ACTOR_ID = "ROLE_SYNC_SERVICE"
SYSTEM_ACTOR_NAME = "ReconciliationEngine"


def _build_record(
    *,
    action_type: str,
    description: str,
    actor_type: str,
    actor_id: str | None,
    actor_name: str | None,
    target_type: str | None,
    target_id: str | None,
    target_name: str | None,
    guild_id: str | None,
    before_state: dict[str, Any] | None,
    after_state: dict[str, Any] | None,
    metadata: dict[str, Any] | None,
    severity: AuditSeverity,
) -> AuditRecord:
    return AuditRecord(
        action_type=action_type,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_name=actor_name,
        target_type=target_type,
        target_id=target_id,
        target_name=(target_name or target_id),
        guild_id=guild_id,
        description=description,
        before_state=before_state,
        after_state=after_state,
        metadata_=metadata,
        severity=severity,
    )


async def emit_audit_event(
    *,
    db_session: AsyncSession,
    action_type: str,
    description: str,
    actor_type: str = "system",
    actor_id: str | None = SYSTEM_ACTOR_ID,
    actor_name: str | None = SYSTEM_ACTOR_NAME,
    target_type: str | None = "discord_user",
    target_id: str | None = None,
    target_name: str | None = None,
    guild_id: str | None = None,
    before_state: dict[str, Any] | None = None,
    after_state: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    severity: AuditSeverity = AuditSeverity.INFO,
) -> None:
    """
    Add a single audit record to the caller's session.

    The flush also writes the caller's pending changes, so database errors
    propagate and the caller's transaction decides whether to retry.

    Parameters
    ----------
    db_session:
        An active ``AsyncSession``. The record commits or rolls back together
        with the caller's transaction.
    action_type:
        Upper-case verb describing the decision, e.g. ``"ROLE_SYNC"``,
        ``"SECURITY_BLOCK"``, ``"SECURITY_UPGRADE"``.
    target_id:
        Discord user ID of the subject (or another identifier for non-user
        targets).
    before_state / after_state:
        JSON snapshots of the affected rows.
    severity:
        ``info`` for routine transitions, ``warning`` for security decisions
        and self-healed inconsistencies, ``error`` for failures.
    """
    record = _build_record(
        action_type=action_type,
        description=description,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_name=actor_name,
        target_type=target_type,
        target_id=target_id,
        target_name=target_name,
        guild_id=guild_id,
        before_state=before_state,
        after_state=after_state,
        metadata=metadata,
        severity=severity,
    )

    db_session.add(record)
    await db_session.flush()


async def emit_detached_audit_event(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    action_type: str,
    description: str,
    target_id: str | None = None,
    target_name: str | None = None,
    guild_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    severity: AuditSeverity = AuditSeverity.ERROR,
) -> bool:
    """
    Write an audit record in its own session and commit immediately.

    Used after a reconciliation transaction rolled back. Best effort: failures
    are logged and reported through the return value, never raised.
    """
    try:
        async with session_factory() as session:
            session.add(
                _build_record(
                    action_type=action_type,
                    description=description,
                    actor_type="system",
                    actor_id=SYSTEM_ACTOR_ID,
                    actor_name=SYSTEM_ACTOR_NAME,
                    target_type="discord_user",
                    target_id=target_id,
                    target_name=target_name,
                    guild_id=guild_id,
                    before_state=None,
                    after_state=None,
                    metadata=metadata,
                    severity=severity,
                )
            )
            await session.commit()
        return True
    except Exception:
        logger.error(
            "audit_event_detached_write_failed",
            action_type=action_type,
            target_id=target_id,
            exc_info=True,
        )
        return False
