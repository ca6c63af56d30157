"""
Tests for the role-to-whitelist reconciliation engine.

Runs against a real database (in-memory SQLite by default) so that
transaction boundaries, rollbacks and stored metadata are exercised end to end.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from roster_control.core.notifications import drain_notifications
from roster_control.db.models import (
    AuditSeverity,
    EntrySource,
    GrantType,
    LinkSource,
    utcnow,
)
from roster_control.modules.reconciliation.engine import (
    ReconciliationEngine,
    SyncStatus,
    is_transient_conflict,
)
from roster_control.modules.reconciliation.schemas import MemberSnapshot
from roster_control.modules.whitelist.store import WhitelistStore

U1 = "310000000000000001"
G1 = "76561198000000101"
G2 = "76561198000000102"
MOD = "Moderator"


def _member(*tiers: str) -> MemberSnapshot:
    return MemberSnapshot(
        guild_id="guild-1",
        display_name="Ursula",
        tag="ursula#0001",
        held_tiers=frozenset(tiers),
    )


class _LockError(Exception):
    sqlstate = "40P01"


def _deadlock() -> OperationalError:
    return OperationalError("SELECT pg_advisory_xact_lock", {}, _LockError("deadlock detected"))


# ---------------------------------------------------------------------------
# Concrete lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unlinked_to_blocked_to_upgraded_to_revoked(
    engine: ReconciliationEngine, role_rows, audit_records, recording_sink
) -> None:
    # 1. No link, elevated tier: unlinked placeholder
    result = await engine.sync_user_role(U1, MOD, _member(MOD))
    assert result.status is SyncStatus.NO_IDENTITY_LINK
    assert result.reason == "no_identity_link"

    rows = await role_rows(U1)
    assert len(rows) == 1
    placeholder = rows[0]
    assert placeholder.approved is False
    assert placeholder.revoked is False
    assert placeholder.subject_game_id is None
    assert placeholder.metadata_["requiresIdentityLink"] is True

    # 2. Weak link appears: nothing changes until the next reconciliation
    await engine.record_identity_link(U1, G1, 0.5, LinkSource.TICKET)
    rows = await role_rows(U1)
    assert len(rows) == 1
    assert rows[0].approved is False and rows[0].revoked is False

    # 3. Re-grant with a 0.5 link: placeholder becomes a security-blocked record
    result = await engine.sync_user_role(U1, MOD, _member(MOD))
    assert result.status is SyncStatus.SECURITY_BLOCKED
    assert result.reason == "security_blocked_insufficient_confidence"
    assert result.success is False

    rows = await role_rows(U1)
    assert len(rows) == 1
    blocked = rows[0]
    assert blocked.id == placeholder.id
    assert blocked.approved is False
    assert blocked.revoked is True
    assert "insufficient" in blocked.revoked_reason.lower()
    assert blocked.subject_game_id == G1
    assert blocked.metadata_["securityBlocked"] is True
    assert blocked.metadata_["actualConfidence"] == 0.5
    assert blocked.metadata_["requiredConfidence"] == 1.0
    assert "requiresIdentityLink" not in blocked.metadata_

    block_audits = await audit_records("SECURITY_BLOCK")
    assert len(block_audits) == 1
    assert block_audits[0].severity is AuditSeverity.WARNING

    # 4. Link verified while the role is still held: the blocked entry is upgraded
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    result = await engine.sync_user_role(U1, MOD, _member(MOD))
    assert result.status is SyncStatus.SUCCESS
    assert result.upgraded_entry_ids == [placeholder.id]

    rows = await role_rows(U1)
    assert len(rows) == 1
    upgraded = rows[0]
    assert upgraded.approved is True
    assert upgraded.revoked is False
    assert upgraded.revoked_reason is None
    assert upgraded.metadata_["upgraded"] is True
    assert upgraded.metadata_["upgradedFrom"] == "security_blocked"
    assert "securityBlocked" not in upgraded.metadata_

    upgrade_audits = await audit_records("SECURITY_UPGRADE")
    assert len(upgrade_audits) == 1
    assert upgrade_audits[0].severity is AuditSeverity.WARNING

    await drain_notifications()
    assert len(recording_sink.sent) == 1
    category, payload = recording_sink.sent[0]
    assert category == "bot_logs"
    assert payload.severity == "warning"

    # 5. Role lost: the active entry is revoked
    result = await engine.sync_user_role(U1, None, _member())
    assert result.success is True
    assert result.revoked_count == 1

    rows = await role_rows(U1)
    assert rows[0].revoked is True
    assert rows[0].revoked_reason == "role_removed"

    history = [event["transition"] for event in rows[0].metadata_["history"]]
    assert history == ["placeholder_created", "security_blocked", "upgraded", "revoked"]


# ---------------------------------------------------------------------------
# Idempotence and self-healing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_repeated_sync_is_a_noop(
    engine: ReconciliationEngine, role_rows, audit_records, recording_sink
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)

    first = await engine.sync_user_role(U1, MOD, _member(MOD))
    before = [(row.id, row.approved, row.revoked, row.metadata_) for row in await role_rows(U1)]

    second = await engine.sync_user_role(U1, MOD, _member(MOD))
    after = [(row.id, row.approved, row.revoked, row.metadata_) for row in await role_rows(U1)]

    assert first.changed is True
    assert second.changed is False
    assert second.status is SyncStatus.SUCCESS
    assert before == after
    assert sum(1 for row in await role_rows(U1) if row.is_granting) == 1

    syncs = await audit_records("ROLE_SYNC")
    assert len(syncs) == 2
    assert syncs[-1].metadata_["outcome"] == "noop"

    await drain_notifications()
    assert recording_sink.sent == []


@pytest.mark.asyncio
async def test_repeated_security_block_is_audited_once(
    engine: ReconciliationEngine, role_rows, audit_records
) -> None:
    await engine.record_identity_link(U1, G1, 0.3, LinkSource.TICKET)

    await engine.sync_user_role(U1, MOD, _member(MOD))
    second = await engine.sync_user_role(U1, MOD, _member(MOD))

    assert second.status is SyncStatus.SECURITY_BLOCKED
    assert second.changed is False
    assert len(await role_rows(U1)) == 1
    assert len(await audit_records("SECURITY_BLOCK")) == 1


@pytest.mark.asyncio
async def test_duplicate_active_rows_are_self_healed(
    engine: ReconciliationEngine, session_factory, role_rows, audit_records
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    now = utcnow()
    async with session_factory() as session:
        async with session.begin():
            store = WhitelistStore(session)
            for offset in (timedelta(hours=2), timedelta(hours=1)):
                await store.create_entry(
                    subject_external_id=U1,
                    subject_game_id=G1,
                    access_tier=MOD,
                    grant_type=GrantType.STAFF,
                    source=EntrySource.ROLE,
                    approved=True,
                    now=now - offset,
                )

    result = await engine.sync_user_role(U1, MOD, _member(MOD))

    assert result.success is True
    assert result.duplicates_revoked == 1
    older, newer = await role_rows(U1)
    assert newer.is_granting
    assert older.revoked is True
    assert older.revoked_reason == "duplicate"
    assert older.metadata_["revokedAsDuplicate"] is True

    duplicates = await audit_records("DUPLICATE_ENTRY_DETECTED")
    assert len(duplicates) == 1
    assert duplicates[0].severity is AuditSeverity.WARNING


@pytest.mark.asyncio
async def test_duplicate_placeholders_collapse_to_one(
    engine: ReconciliationEngine, session_factory, role_rows
) -> None:
    async with session_factory() as session:
        async with session.begin():
            store = WhitelistStore(session)
            for _ in range(3):
                await store.create_entry(
                    subject_external_id=U1,
                    subject_game_id=None,
                    access_tier=MOD,
                    grant_type=GrantType.STAFF,
                    source=EntrySource.ROLE,
                    approved=False,
                    flags={"requiresIdentityLink": True},
                )

    result = await engine.sync_user_role(U1, MOD, _member(MOD))

    assert result.status is SyncStatus.NO_IDENTITY_LINK
    assert result.duplicates_revoked == 2
    rows = await role_rows(U1)
    assert sum(1 for row in rows if not row.revoked) == 1
    assert result.entry_id == rows[-1].id


# ---------------------------------------------------------------------------
# Tier transitions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tier_change_updates_row_in_place(engine: ReconciliationEngine, role_rows) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    await engine.sync_user_role(U1, MOD, _member(MOD))

    result = await engine.sync_user_role(U1, "HeadAdmin", _member("HeadAdmin"))

    rows = await role_rows(U1)
    assert len(rows) == 1
    assert rows[0].id == result.entry_id
    assert rows[0].access_tier == "HeadAdmin"
    assert rows[0].metadata_["previousTier"] == MOD


@pytest.mark.asyncio
async def test_game_id_snapshot_refreshed_when_primary_changes(
    engine: ReconciliationEngine, role_rows
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    await engine.sync_user_role(U1, MOD, _member(MOD))

    await engine.record_identity_link(U1, G2, 1.0, LinkSource.VERIFIED)
    await engine.sync_user_role(U1, MOD, _member(MOD))

    rows = await role_rows(U1)
    assert len(rows) == 1
    assert rows[0].subject_game_id == G2


@pytest.mark.asyncio
async def test_base_tier_without_link_creates_nothing(
    engine: ReconciliationEngine, role_rows
) -> None:
    result = await engine.sync_user_role(U1, "Member", _member("Member"))

    assert result.status is SyncStatus.NO_IDENTITY_LINK
    assert await role_rows(U1) == []


@pytest.mark.asyncio
async def test_base_tier_granted_with_weak_link(engine: ReconciliationEngine, role_rows) -> None:
    await engine.record_identity_link(U1, G1, 0.3, LinkSource.TICKET)

    result = await engine.sync_user_role(U1, "Member", _member("Member"))

    assert result.status is SyncStatus.SUCCESS
    rows = await role_rows(U1)
    assert len(rows) == 1
    assert rows[0].is_granting
    assert rows[0].grant_type is GrantType.WHITELIST


# ---------------------------------------------------------------------------
# Security properties
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_weakened_link_revokes_active_elevated_entry(
    engine: ReconciliationEngine, role_rows
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    await engine.sync_user_role(U1, MOD, _member(MOD))

    await engine.record_identity_link(U1, G1, 0.7, LinkSource.ADMIN, force=True)
    result = await engine.sync_user_role(U1, MOD, _member(MOD))

    assert result.status is SyncStatus.SECURITY_BLOCKED
    rows = await role_rows(U1)
    assert not any(row.is_granting for row in rows)
    assert rows[0].revoked_reason == "insufficient_confidence"
    assert rows[-1].is_security_blocked


@pytest.mark.asyncio
async def test_no_upgrade_when_role_no_longer_held(
    engine: ReconciliationEngine, role_rows, audit_records
) -> None:
    await engine.record_identity_link(U1, G1, 0.5, LinkSource.TICKET)
    await engine.sync_user_role(U1, MOD, _member(MOD))
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)

    result = await engine.sync_user_role(U1, "Member", _member("Member"))

    assert result.upgraded_entry_ids == []
    rows = await role_rows(U1)
    blocked = [row for row in rows if row.access_tier == MOD]
    assert len(blocked) == 1 and blocked[0].is_security_blocked
    granting = [row for row in rows if row.is_granting]
    assert [row.access_tier for row in granting] == ["Member"]
    assert await audit_records("SECURITY_UPGRADE") == []


@pytest.mark.asyncio
async def test_no_upgrade_without_member_snapshot(
    engine: ReconciliationEngine, role_rows
) -> None:
    await engine.record_identity_link(U1, G1, 0.5, LinkSource.TICKET)
    await engine.sync_user_role(U1, MOD, _member(MOD))
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)

    result = await engine.sync_user_role(U1, None)

    assert result.upgraded_entry_ids == []
    rows = await role_rows(U1)
    assert not any(row.is_granting for row in rows)


@pytest.mark.asyncio
async def test_upgrade_supersedes_newer_base_tier_grant(
    engine: ReconciliationEngine, role_rows, audit_records
) -> None:
    await engine.record_identity_link(U1, G1, 0.5, LinkSource.TICKET)
    await engine.sync_user_role(U1, MOD, _member(MOD))
    await engine.sync_user_role(U1, "Member", _member(MOD, "Member"))
    blocked, member_row = await role_rows(U1)
    assert blocked.is_security_blocked
    assert member_row.is_granting

    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    result = await engine.sync_user_role(U1, MOD, _member(MOD, "Member"))

    assert result.status is SyncStatus.SUCCESS
    assert result.upgraded_entry_ids == [blocked.id]
    assert result.duplicates_revoked == 0

    upgraded, superseded = await role_rows(U1)
    assert upgraded.id == blocked.id
    assert upgraded.approved is True
    assert upgraded.revoked is False
    assert upgraded.access_tier == MOD
    assert superseded.revoked is True
    assert superseded.revoked_reason == "superseded"
    assert superseded.access_tier == "Member"
    assert await audit_records("DUPLICATE_ENTRY_DETECTED") == []
    assert len(await audit_records("SECURITY_UPGRADE")) == 1


# ---------------------------------------------------------------------------
# Failures, retries and the in-flight fast path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failure_rolls_back_and_audits(
    engine: ReconciliationEngine, role_rows, audit_records, monkeypatch: pytest.MonkeyPatch
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)

    async def exploding_apply(state, tier, link) -> None:
        await state.store.create_entry(
            subject_external_id=U1,
            subject_game_id=G1,
            access_tier=MOD,
            grant_type=GrantType.STAFF,
            source=EntrySource.ROLE,
            approved=True,
        )
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(engine, "_apply_tier", exploding_apply)

    result = await engine.sync_user_role(U1, MOD, _member(MOD))

    assert result.status is SyncStatus.ERROR
    assert result.reason == "unexpected"
    assert result.error == "disk on fire"
    assert await role_rows(U1) == []
    assert await audit_records("ROLE_SYNC") == []

    errors = await audit_records("ROLE_SYNC_ERROR")
    assert len(errors) == 1
    assert errors[0].severity is AuditSeverity.ERROR
    assert errors[0].target_id == U1


@pytest.mark.asyncio
async def test_lock_conflict_is_retried(
    engine: ReconciliationEngine, role_rows, monkeypatch: pytest.MonkeyPatch
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    calls = 0

    async def flaky_lock(session, external_id: str) -> None:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise _deadlock()

    monkeypatch.setattr(engine, "_lock_subject", flaky_lock)

    result = await engine.sync_user_role(U1, MOD, _member(MOD))

    assert calls == 3
    assert result.status is SyncStatus.SUCCESS
    assert len(await role_rows(U1)) == 1


@pytest.mark.asyncio
async def test_persistent_lock_conflict_is_recoverable_failure(
    engine: ReconciliationEngine, audit_records, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock = AsyncMock(side_effect=_deadlock())
    monkeypatch.setattr(engine, "_lock_subject", lock)

    result = await engine.sync_user_role(U1, MOD, _member(MOD))

    assert lock.await_count == engine.settings.reconcile_max_attempts
    assert result.status is SyncStatus.ERROR
    assert result.reason == "transaction_conflict"
    assert result.recoverable is True
    assert len(await audit_records("ROLE_SYNC_ERROR")) == 1


def _lock_audit_inserts(times: int):
    """Cursor hook failing the first ``times`` audit INSERTs with a lock error."""
    failed: list[str] = []

    def hook(conn, cursor, statement, parameters, context, executemany) -> None:
        if "INSERT INTO audit_records" in statement and len(failed) < times:
            failed.append(statement)
            raise OperationalError(statement, parameters, Exception("database is locked"))

    return hook, failed


@pytest.mark.asyncio
async def test_audit_write_conflict_retries_whole_transaction(
    engine: ReconciliationEngine, test_engine, role_rows, audit_records
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    hook, failed = _lock_audit_inserts(1)
    event.listen(test_engine.sync_engine, "before_cursor_execute", hook)
    try:
        result = await engine.sync_user_role(U1, MOD, _member(MOD))
    finally:
        event.remove(test_engine.sync_engine, "before_cursor_execute", hook)

    assert len(failed) == 1
    assert result.status is SyncStatus.SUCCESS
    rows = await role_rows(U1)
    assert len(rows) == 1
    assert rows[0].is_granting
    assert len(await audit_records("ROLE_SYNC")) == 1


@pytest.mark.asyncio
async def test_persistent_audit_write_conflict_leaves_no_rows(
    engine: ReconciliationEngine, test_engine, role_rows, audit_records
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    hook, failed = _lock_audit_inserts(engine.settings.reconcile_max_attempts)
    event.listen(test_engine.sync_engine, "before_cursor_execute", hook)
    try:
        result = await engine.sync_user_role(U1, MOD, _member(MOD))
    finally:
        event.remove(test_engine.sync_engine, "before_cursor_execute", hook)

    assert len(failed) == engine.settings.reconcile_max_attempts
    assert result.status is SyncStatus.ERROR
    assert result.reason == "transaction_conflict"
    assert await role_rows(U1) == []
    assert await audit_records("ROLE_SYNC") == []
    assert len(await audit_records("ROLE_SYNC_ERROR")) == 1


def test_transient_conflict_detection() -> None:
    assert is_transient_conflict(_deadlock())
    assert is_transient_conflict(
        OperationalError("UPDATE", {}, Exception("database is locked"))
    )
    assert not is_transient_conflict(OperationalError("UPDATE", {}, Exception("no such table")))
    assert not is_transient_conflict(RuntimeError("database is locked"))


@pytest.mark.asyncio
async def test_in_flight_duplicate_is_skipped(engine: ReconciliationEngine, role_rows) -> None:
    engine._in_flight.add((U1, MOD))
    try:
        result = await engine.sync_user_role(U1, MOD, _member(MOD))
    finally:
        engine._in_flight.discard((U1, MOD))

    assert result.status is SyncStatus.SKIPPED
    assert result.reason == "skipped_in_flight"
    assert await role_rows(U1) == []


@pytest.mark.asyncio
async def test_cache_invalidated_only_after_writes(session_factory, settings) -> None:
    cache = AsyncMock()
    engine = ReconciliationEngine(session_factory, settings=settings, cache=cache)
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)

    await engine.sync_user_role(U1, MOD, _member(MOD))
    await engine.sync_user_role(U1, MOD, _member(MOD))

    cache.invalidate.assert_awaited_once()


# ---------------------------------------------------------------------------
# Departures and link administration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_revoke_subject_keeps_non_role_grants(
    engine: ReconciliationEngine, session_factory, role_rows, audit_records
) -> None:
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    await engine.sync_user_role(U1, MOD, _member(MOD))
    async with session_factory() as session:
        async with session.begin():
            await WhitelistStore(session).grant_entry(
                subject_external_id=U1,
                subject_game_id=G1,
                access_tier="Donator",
                source=EntrySource.DONATION,
                granted_by="kofi",
                duration=timedelta(days=30),
            )

    result = await engine.revoke_subject(U1, guild_id="guild-1")

    assert result.revoked_count == 1
    assert (await role_rows(U1))[0].revoked_reason == "user_left_community"
    async with session_factory() as session:
        remaining = await WhitelistStore(session).find_active_entries(subject_game_id=G1)
    assert [entry.source for entry in remaining] == [EntrySource.DONATION]

    audits = await audit_records("WHITELIST_AUTO_REVOKE")
    assert len(audits) == 1
    assert audits[0].guild_id == "guild-1"


@pytest.mark.asyncio
async def test_revoke_subject_without_rows_writes_nothing(
    engine: ReconciliationEngine, audit_records
) -> None:
    result = await engine.revoke_subject(U1)

    assert result.revoked_count == 0
    assert result.changed is False
    assert await audit_records("WHITELIST_AUTO_REVOKE") == []


@pytest.mark.asyncio
async def test_link_changes_are_audited(engine: ReconciliationEngine, audit_records) -> None:
    await engine.record_identity_link(U1, G1, 0.3, LinkSource.TICKET)
    await engine.record_identity_link(U1, G1, 1.0, LinkSource.VERIFIED)
    ignored = await engine.record_identity_link(U1, G1, 0.3, LinkSource.TICKET)
    removed = await engine.remove_identity_link(U1, G1, actor_id="admin-1")

    assert ignored.link.confidence == 1.0
    assert removed is True
    actions = [record.action_type for record in await audit_records()]
    assert actions == ["LINK_CREATED", "LINK_UPDATED", "LINK_REMOVED"]
