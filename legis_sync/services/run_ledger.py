"""
Sync Run Ledger

Persists one SyncRun row per backfill/incremental run so progress and
failures survive restarts.

Usage:
    ledger = SyncRunLedger(engine)

    # On worker startup, close runs whose process died mid-run
    ledger.reset_stale_runs(timeout_minutes=180)

    ledger.start(run_id, mode="backfill", params={"start_year": 2019})
    ...
    ledger.finish(run_id, outcome)

    # Later, replay only the units that failed
    await orchestrator.retry_failed(run_id)
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from legis_sync.core.typing import col, utc_now
from legis_sync.models.sync_run import RunStatus, SyncRun

logger = logging.getLogger(__name__)


class SyncRunLedger:
    def __init__(self, engine: Engine):
        self.engine = engine

    def start(self, run_id: str, mode: str, params: Optional[Dict[str, Any]] = None) -> SyncRun:
        run = SyncRun(run_id=run_id, mode=mode, params=params or {})
        with Session(self.engine) as session:
            session.add(run)
            session.commit()
            session.refresh(run)
        logger.info(f"Started {mode} run {run_id}")
        return run

    def finish(self, run_id: str, outcome: Any) -> Optional[SyncRun]:
        """
        Close a run with the aggregate counts of a SyncOutcome.

        Returns None if the run is unknown (e.g. the ledger was wiped mid-run).
        """
        with Session(self.engine) as session:
            run = session.exec(select(SyncRun).where(col(SyncRun.run_id) == run_id)).first()
            if not run:
                logger.warning(f"Run {run_id} not found in ledger")
                return None

            run.status = RunStatus(outcome.status)
            run.units_ok = outcome.units_ok
            run.units_failed = outcome.units_failed
            run.fetched = outcome.fetched
            run.persisted = outcome.persisted
            run.skipped = outcome.skipped
            run.failed = outcome.failed
            run.latest_error = outcome.errors[-1][:1000] if outcome.errors else None
            run.failed_units = list(outcome.failed_units)
            run.finished_at = utc_now()
            session.add(run)
            session.commit()
            session.refresh(run)

        logger.info(f"Finished run {run_id}: {run.status.value}")
        return run

    def get(self, run_id: str) -> Optional[SyncRun]:
        with Session(self.engine) as session:
            return session.exec(select(SyncRun).where(col(SyncRun.run_id) == run_id)).first()

    def reset_stale_runs(self, timeout_minutes: int = 180) -> int:
        """
        Mark runs stuck in RUNNING for longer than timeout_minutes as ABANDONED.

        A run only stays RUNNING after its process died, so this is called on
        worker startup.

        Returns:
            Number of runs marked abandoned
        """
        cutoff = utc_now() - timedelta(minutes=timeout_minutes)

        with Session(self.engine) as session:
            stmt = select(SyncRun).where(
                col(SyncRun.status) == RunStatus.RUNNING,
                col(SyncRun.started_at) < cutoff,
            )
            stale_runs = list(session.exec(stmt).all())

            for run in stale_runs:
                run.status = RunStatus.ABANDONED
                run.finished_at = utc_now()
                run.latest_error = f"Run did not finish within {timeout_minutes} minutes"
                session.add(run)

            if stale_runs:
                session.commit()
                logger.warning(f"Marked {len(stale_runs)} stale runs as abandoned")

        return len(stale_runs)

    def latest(self, mode: Optional[str] = None) -> Optional[SyncRun]:
        stmt = select(SyncRun)
        if mode:
            stmt = stmt.where(col(SyncRun.mode) == mode)
        with Session(self.engine) as session:
            return session.exec(stmt.order_by(col(SyncRun.started_at).desc(), col(SyncRun.id).desc())).first()
