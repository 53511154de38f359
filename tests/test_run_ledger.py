"""
Tests for the sync run ledger.

Tests cover:
- Opening and closing runs
- Stale run recovery on startup
- Latest run lookup
"""

from datetime import timedelta

from sqlmodel import select

from legis_sync.core.typing import utc_now
from legis_sync.models import SyncRun
from legis_sync.models.sync_run import RunStatus
from legis_sync.services.run_ledger import SyncRunLedger
from legis_sync.services.sync import SyncOutcome


class TestStartFinish:
    """Tests for start/finish."""

    def test_start_creates_running_row(self, test_engine, test_session):
        ledger = SyncRunLedger(test_engine)

        run = ledger.start("run_abc", mode="backfill", params={"start_year": 2020})

        assert run.id is not None
        stored = test_session.exec(select(SyncRun)).one()
        assert stored.status == RunStatus.RUNNING
        assert stored.params == {"start_year": 2020}
        assert stored.finished_at is None

    def test_finish_copies_outcome(self, test_engine):
        ledger = SyncRunLedger(test_engine)
        ledger.start("run_abc", mode="incremental")
        outcome = SyncOutcome(
            mode="incremental",
            units_ok=2,
            units_failed=1,
            fetched=250,
            persisted=240,
            skipped=10,
            errors=["votacao 2024-06-14..2024-06-15: circuit open"],
        )

        run = ledger.finish("run_abc", outcome)

        assert run.status == RunStatus.PARTIAL
        assert run.fetched == 250
        assert run.persisted == 240
        assert run.skipped == 10
        assert run.latest_error == "votacao 2024-06-14..2024-06-15: circuit open"
        assert run.finished_at is not None

    def test_finish_stores_failed_units(self, test_engine):
        ledger = SyncRunLedger(test_engine)
        ledger.start("run_abc", mode="backfill")
        unit = {
            "entity_type": "votacao",
            "label": "votacao 2023-03",
            "filters": {},
            "window": ["2023-03-01", "2023-03-31"],
            "context": {},
        }
        ledger.finish("run_abc", SyncOutcome(mode="backfill", units_ok=11, units_failed=1, failed_units=[unit]))

        assert ledger.get("run_abc").failed_units == [unit]

    def test_get_unknown_run(self, test_engine):
        assert SyncRunLedger(test_engine).get("run_missing") is None

    def test_finish_unknown_run(self, test_engine):
        assert SyncRunLedger(test_engine).finish("run_missing", SyncOutcome(mode="backfill")) is None


class TestResetStaleRuns:
    """Tests for reset_stale_runs."""

    def test_marks_only_old_running_rows(self, test_engine, test_session):
        now = utc_now()
        test_session.add(SyncRun(run_id="run_old", mode="backfill", started_at=now - timedelta(hours=5)))
        test_session.add(SyncRun(run_id="run_recent", mode="backfill", started_at=now - timedelta(minutes=5)))
        test_session.add(
            SyncRun(
                run_id="run_done",
                mode="backfill",
                status=RunStatus.SUCCESS,
                started_at=now - timedelta(hours=5),
            )
        )
        test_session.commit()

        count = SyncRunLedger(test_engine).reset_stale_runs(timeout_minutes=180)

        assert count == 1
        test_session.expire_all()
        statuses = {r.run_id: r.status for r in test_session.exec(select(SyncRun)).all()}
        assert statuses == {
            "run_old": RunStatus.ABANDONED,
            "run_recent": RunStatus.RUNNING,
            "run_done": RunStatus.SUCCESS,
        }

    def test_nothing_stale(self, test_engine):
        assert SyncRunLedger(test_engine).reset_stale_runs() == 0


class TestLatest:
    """Tests for latest-run lookup."""

    def test_latest_by_mode(self, test_engine):
        ledger = SyncRunLedger(test_engine)
        ledger.start("run_1", mode="backfill")
        ledger.start("run_2", mode="incremental")
        ledger.start("run_3", mode="backfill")

        assert ledger.latest().run_id == "run_3"
        assert ledger.latest("incremental").run_id == "run_2"
        assert ledger.latest("unknown") is None
