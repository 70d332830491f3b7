from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env")

from app.core.database import init_db  # noqa: E402
from app.core.logging import setup_logging  # noqa: E402
from app.services.catalog_sync import (  # noqa: E402
    SyncFatalError,
    run_manual_sync,
    run_scheduled_sync,
    run_webhook_sync,
)
from app.services.sync_runs import SyncAlreadyRunningError  # noqa: E402


async def _run(trigger: str, force: bool, product_id: str | None, actor: str | None) -> int:
    await init_db()
    try:
        if product_id:
            summary = await run_webhook_sync(product_id)
        elif trigger == "scheduled":
            summary = await run_scheduled_sync(force)
        else:
            summary = await run_manual_sync(actor or "cli")
    except SyncAlreadyRunningError as exc:
        print(f"catalog sync: {exc}")
        return 3
    except SyncFatalError as exc:
        print(f"catalog sync failed: {exc} (run {exc.run_id})")
        return 1

    print(json.dumps(summary, indent=2, default=str))
    if summary.get("status") == "failed":
        return 1
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Synchronize the local catalog with the source catalog")
    parser.add_argument(
        "--trigger",
        choices=["manual", "scheduled"],
        default="scheduled",
        help="Run as a manual sync or a gated scheduled sync",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Ignore the minimum interval between scheduled runs",
    )
    parser.add_argument("--product-id", help="Sync a single source product only")
    parser.add_argument("--actor", help="Operator name recorded on manual runs")
    args = parser.parse_args()

    setup_logging()
    raise SystemExit(asyncio.run(_run(args.trigger, args.force, args.product_id, args.actor)))


if __name__ == "__main__":
    main()
