"""Report whitelist status per Steam id and role-sync status per Discord user."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from roster_control.db.session import close_db, get_background_session, init_db
from roster_control.modules.whitelist.status import WhitelistStatusService


async def build_status_report(
    session: AsyncSession,
    *,
    game_ids: Sequence[str] = (),
    external_ids: Sequence[str] = (),
) -> dict[str, Any]:
    """Collect stacked whitelist status and role-sync status without writing anything."""
    service = WhitelistStatusService(session)
    whitelist = {}
    for game_id in game_ids:
        status = await service.get_whitelist_status(game_id)
        whitelist[game_id] = status.to_dict()

    sync = {}
    for external_id in external_ids:
        sync[external_id] = await service.get_sync_status(external_id)

    return {"whitelist": whitelist, "sync": sync}


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--game-id", action="append", default=[], help="Steam id (repeatable).")
    parser.add_argument(
        "--external-id", action="append", default=[], help="Discord user id (repeatable)."
    )
    return parser.parse_args()


async def _main() -> int:
    args = _parse_args()
    if not args.game_id and not args.external_id:
        print(json.dumps({"error": "Provide at least one --game-id or --external-id"}))
        return 2

    await init_db()
    try:
        async with get_background_session() as session:
            report = await build_status_report(
                session, game_ids=args.game_id, external_ids=args.external_id
            )
    finally:
        await close_db()

    report["checked_at"] = datetime.now(UTC).isoformat()
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
