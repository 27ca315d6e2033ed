#!/usr/bin/env python3
"""Run one Delhivery tracking reconciliation sweep outside the web process."""

from __future__ import annotations

import argparse
import asyncio
import json
import os

from storefront.common import (
    ServiceSettings,
    configure_logging,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
    resolve_redis,
    close_redis_connections,
)
from storefront.shipment_service.app.courier import DelhiveryGateway
from storefront.shipment_service.app.jobs import run_sync_once
from storefront.shipment_service.app.main import DEFAULT_DATABASE_URL


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync booked shipments with Delhivery tracking")
    parser.add_argument(
        "--database-url",
        default=os.getenv("SERVICE_DATABASE_URL"),
        help="Database URL (default: SERVICE_DATABASE_URL or the local SQLite file)",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Seconds to wait between courier calls (default: SERVICE_SHIPMENT_SYNC_DELAY_SECONDS)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Include per-shipment results in the report",
    )
    return parser.parse_args()


async def main_async() -> int:
    args = parse_args()
    overrides: dict[str, object] = {"app_name": "shipment-sync", "enable_metrics": False}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.delay is not None:
        overrides["shipment_sync_delay_seconds"] = args.delay
    settings = ServiceSettings().model_copy(update=overrides)
    configure_logging(settings)

    session_factory = get_session_factory(resolve_database_url(settings, DEFAULT_DATABASE_URL))
    redis_client = resolve_redis(settings)
    gateway = DelhiveryGateway.from_settings(settings, redis=redis_client)
    try:
        summary = await run_sync_once(session_factory, gateway, settings)
    finally:
        await gateway.close()
        await dispose_engines()
        if redis_client is not None:
            await close_redis_connections()

    if not args.verbose:
        summary = {key: value for key, value in summary.items() if key != "results"}
    print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    return 0 if summary["failed"] == 0 else 2


def main() -> None:
    try:
        exit_code = asyncio.run(main_async())
    except Exception as exc:
        print(json.dumps({"error": str(exc)}))
        exit_code = 1
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
