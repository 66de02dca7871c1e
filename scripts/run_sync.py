#!/usr/bin/env python3
"""
Store Sync Script

Runs order and/or variant-snapshot syncs for one store from the command line.
Useful for a first backfill: a capped run leaves its progress (cursor or
saved page token) at the last committed page, so --until-done keeps going until nothing is left.

Usage:
    python scripts/run_sync.py --store mystore.myshopify.com [--entity all] [--days 120]

Examples:
    # Register a store (or rotate its token) and run both syncs
    python scripts/run_sync.py --store mystore.myshopify.com --token shpat_xxx

    # First backfill of orders, 40 pages at a time until caught up
    python scripts/run_sync.py --store mystore.myshopify.com --entity orders --until-done

    # See what would be fetched without writing anything
    python scripts/run_sync.py --store mystore.myshopify.com --dry-run
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from shelfsense.config import get_settings
from shelfsense.exceptions import ConfigurationError
from shelfsense.models.base import create_session_factory, init_db
from shelfsense.services.store_adapter import StoreAdapter
from shelfsense.services.sync_engine import ENTITY_TYPES, SyncEngine, SyncOptions
from shelfsense.utils.logger import log

# Safety stop for --until-done
MAX_ROUNDS = 50


async def run(store_id: str, entities, days, page_cap, dry_run: bool, until_done: bool, token=None) -> int:
    settings = get_settings()
    engine, session_factory = create_session_factory(settings.database_url)
    init_db(engine)

    db = session_factory()
    failed = 0
    try:
        adapter = StoreAdapter(db)
        if token:
            adapter.upsert_store(store_id, token)

        sync_engine = SyncEngine(adapter, settings=settings)
        for entity_type in entities:
            for round_number in range(1, MAX_ROUNDS + 1):
                try:
                    report = await sync_engine.run_sync(
                        store_id,
                        entity_type,
                        SyncOptions(dry=dry_run, days=days, page_cap=page_cap),
                    )
                except ConfigurationError as e:
                    log.error(str(e))
                    return 2

                print(json.dumps(report.to_dict(), indent=2))

                if not report.ok:
                    failed += 1
                    break
                # A dry run saves no cursor or resume point, so repeating it would refetch the same pages
                if not (until_done and report.more_available) or dry_run:
                    break
                log.info(f"{entity_type}: more pages available, starting round {round_number + 1}")
    finally:
        db.close()
        engine.dispose()

    return 1 if failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Sync Shopify orders and variant snapshots for one store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--store", required=True,
        help="Shop domain, e.g. mystore.myshopify.com"
    )
    parser.add_argument(
        "--entity", type=str, default="all",
        choices=["all"] + list(ENTITY_TYPES),
        help="What to sync (default: all)"
    )
    parser.add_argument(
        "--days", type=int, default=None,
        help="Lookback for the first run when no cursor exists (clamped to 1-365)"
    )
    parser.add_argument(
        "--page-cap", type=int, default=None,
        help="Pages per run (default: SYNC_PAGE_CAP)"
    )
    parser.add_argument(
        "--token", type=str, default=None,
        help="Admin API access token; registers the store or replaces its token"
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Fetch and validate without saving to database"
    )
    parser.add_argument(
        "--until-done", action="store_true",
        help="Repeat capped runs until no more pages are available"
    )

    args = parser.parse_args()
    entities = list(ENTITY_TYPES) if args.entity == "all" else [args.entity]

    sys.exit(asyncio.run(run(
        args.store,
        entities,
        days=args.days,
        page_cap=args.page_cap,
        dry_run=args.dry_run,
        until_done=args.until_done,
        token=args.token,
    )))
