#!/usr/bin/env python3
"""
Run a one-off sync against the Câmara API.

Usage:
    python scripts/run_sync.py incremental                       # recent window, default entities
    python scripts/run_sync.py incremental --entities proposicao # quick sync
    python scripts/run_sync.py backfill --start-year 2019 --end-year 2023
    python scripts/run_sync.py backfill --start-year 2023 --entities deputado despesa
    python scripts/run_sync.py retry --run-id run_5f2a9c0e1b7d4a36     # replay failed units of a run
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

sys.path.insert(0, str(Path(__file__).parent.parent))

from legis_sync.client.resilient import ResilientClient
from legis_sync.core.config import ENTITY_TYPES, settings
from legis_sync.core.logging_config import get_logger
from legis_sync.db import create_db_and_tables, engine
from legis_sync.services.repository import SQLModelRepository
from legis_sync.services.run_ledger import SyncRunLedger
from legis_sync.services.sync import SyncOrchestrator, SyncPolicy

logger = get_logger("run_sync")


async def run(args: argparse.Namespace) -> int:
    create_db_and_tables()

    async with ResilientClient.from_settings() as client:
        orchestrator = SyncOrchestrator(
            client,
            SQLModelRepository(engine),
            policy=SyncPolicy.from_settings(),
            ledger=SyncRunLedger(engine),
        )
        if args.mode == "backfill":
            outcome = await orchestrator.run_backfill(
                args.start_year,
                args.end_year,
                entities=args.entities,
                deadline=args.deadline,
            )
        elif args.mode == "retry":
            outcome = await orchestrator.retry_failed(args.run_id, deadline=args.deadline)
        else:
            outcome = await orchestrator.run_incremental(entities=args.entities, deadline=args.deadline)

        logger.info("breaker states", breakers=client.breaker_states())

    print(json.dumps(outcome.as_dict(), indent=2, default=str))
    return 0 if outcome.status != "failed" else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sync Câmara open data into the local database")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    backfill = subparsers.add_parser("backfill", help="Historical sync over a range of years")
    backfill.add_argument("--start-year", type=int, required=True)
    backfill.add_argument("--end-year", type=int, help="Last year to sync (default: start year)")

    incremental = subparsers.add_parser("incremental", help="Sync only the most recent window")

    retry = subparsers.add_parser("retry", help="Re-run only the units that failed in an earlier run")
    retry.add_argument("--run-id", required=True, help="Run whose failed units should be retried")

    for sub in (backfill, incremental):
        sub.add_argument("--entities", nargs="+", choices=ENTITY_TYPES, help="Entity types to sync")

    for sub in subparsers.choices.values():
        sub.add_argument(
            "--deadline",
            type=float,
            default=settings.RUN_DEADLINE,
            help="Stop the run after this many seconds",
        )

    args = parser.parse_args(argv)
    if args.mode == "backfill" and args.end_year is None:
        args.end_year = args.start_year

    try:
        return asyncio.run(run(args))
    except ValueError as e:
        parser.error(str(e))


if __name__ == "__main__":
    sys.exit(main())
