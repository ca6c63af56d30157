"""Run a bulk role sync or departed-member cleanup from an exported roster file."""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import UTC, datetime
from typing import Any

from roster_control.core.cache import WhitelistStatusCache, close_redis
from roster_control.core.config import get_settings
from roster_control.core.errors import RosterFetchError
from roster_control.core.logging import configure_logging
from roster_control.core.notifications import DiscordWebhookSink, drain_notifications
from roster_control.core.notifications.sink import close_http_client
from roster_control.db.session import close_db, create_schema, get_session_factory, init_db
from roster_control.modules.reconciliation.bulk import BulkSyncDriver
from roster_control.modules.reconciliation.engine import ReconciliationEngine
from roster_control.modules.reconciliation.roster import StaticRosterProvider


async def run_roster_job(
    driver: BulkSyncDriver,
    mode: str,
    guild_id: str,
    *,
    dry_run: bool = False,
) -> tuple[dict[str, Any], bool]:
    """Run one sync or cleanup pass. Returns the JSON summary and whether it failed."""
    summary: dict[str, Any] = {
        "ran_at": datetime.now(UTC).isoformat(),
        "mode": mode,
        "guild_id": guild_id,
    }
    try:
        if mode == "sync":
            result = await driver.bulk_sync_guild(guild_id, dry_run=dry_run)
            summary["result"] = result.to_dict()
            failed = result.error > 0
        elif mode == "cleanup":
            roster = await driver.load_roster(guild_id)
            cleanup = await driver.cleanup_departed(roster, guild_id=guild_id)
            summary["result"] = cleanup.to_dict()
            failed = bool(cleanup.errors)
        else:
            raise ValueError(f"Unknown mode: {mode}")
    except RosterFetchError as exc:
        summary["error"] = str(exc)
        failed = True
    return summary, failed


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reconcile role-based whitelist entries against a guild roster."
    )
    parser.add_argument(
        "mode",
        choices=("sync", "cleanup"),
        help="'sync' replays role reconciliation; 'cleanup' revokes departed members.",
    )
    parser.add_argument(
        "--roster",
        required=True,
        help="JSON file with a list of members (or an object with a 'members' list).",
    )
    parser.add_argument(
        "--guild-id",
        default=None,
        help="Guild id; defaults to DISCORD_GUILD_ID.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count members per tier without writing (sync mode only).",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running.",
    )
    return parser.parse_args()


async def _main() -> int:
    args = _parse_args()
    settings = get_settings()
    configure_logging()

    guild_id = args.guild_id or settings.discord_guild_id
    if not guild_id:
        print(json.dumps({"error": "Provide --guild-id or set DISCORD_GUILD_ID"}))
        return 2

    await init_db()
    try:
        if args.create_tables:
            await create_schema()

        engine = ReconciliationEngine(
            get_session_factory(),
            settings=settings,
            sink=DiscordWebhookSink(settings) if settings.notification_webhook_urls else None,
            cache=WhitelistStatusCache(settings=settings) if settings.redis_url else None,
        )
        driver = BulkSyncDriver(
            engine,
            StaticRosterProvider.from_json_file(args.roster, guild_id=guild_id),
            settings=settings,
        )
        summary, failed = await run_roster_job(driver, args.mode, guild_id, dry_run=args.dry_run)

        await drain_notifications()
        print(json.dumps(summary, indent=2, default=str))
        return 1 if failed else 0
    finally:
        await close_http_client()
        await close_redis()
        await close_db()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
