#!/usr/bin/env python3
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from legis_sync.client.resilient import ResilientClient
from legis_sync.core.config import settings
from legis_sync.core.db_utils import check_db_connection
from legis_sync.core.logging_config import get_logger
from legis_sync.core.scheduler import shutdown_scheduler, start_scheduler
from legis_sync.db import create_db_and_tables, engine
from legis_sync.services.repository import SQLModelRepository
from legis_sync.services.run_ledger import SyncRunLedger
from legis_sync.services.sync import SyncOrchestrator, SyncPolicy

logger = get_logger("scheduler_worker")


async def main():
    logger.info("Starting dedicated scheduler worker...")
    if not check_db_connection(engine):
        logger.error("Database unreachable, not starting scheduler")
        sys.exit(1)
    create_db_and_tables()

    ledger = SyncRunLedger(engine)
    ledger.reset_stale_runs(timeout_minutes=settings.STALE_RUN_MINUTES)

    async with ResilientClient.from_settings() as client:
        orchestrator = SyncOrchestrator(
            client,
            SQLModelRepository(engine),
            policy=SyncPolicy.from_settings(),
            ledger=ledger,
        )
        scheduler = start_scheduler(orchestrator)
        try:
            while True:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            logger.info("Scheduler worker shutting down.")
            raise
        finally:
            shutdown_scheduler(scheduler)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
