"""
Sync Run Model

Ledger of backfill and incremental runs. A row is opened when a run starts
and closed with its aggregate counts, so operators can see what ran, how
far it got and why it failed, across restarts.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlmodel import Column, Field, JSON, SQLModel
from sqlalchemy import Index

from legis_sync.core.typing import utc_now


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"  # some units failed
    FAILED = "failed"  # every unit failed or the run aborted
    ABANDONED = "abandoned"  # process died while running


class SyncRun(SQLModel, table=True):
    __tablename__ = "sync_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(unique=True, index=True)
    mode: str  # "backfill", "incremental", "retry"
    status: RunStatus = Field(default=RunStatus.RUNNING, index=True)
    params: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    units_ok: int = 0
    units_failed: int = 0
    fetched: int = 0
    persisted: int = 0
    skipped: int = 0
    failed: int = 0
    latest_error: Optional[str] = None
    # Descriptors of units that failed or were interrupted, replayed by retry_failed
    failed_units: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    __table_args__ = (Index("ix_sync_runs_stale", "status", "started_at"),)


__all__ = ["SyncRun", "RunStatus"]
