"""
Sync orchestration: backfill and incremental runs.

A run is a sequence of independent FetchUnits (one entity type for one
month, one deputy's expenses for one year, ...). Each unit pages through the
upstream under its own timeout, converts every item and upserts the batch.
A failed unit is recorded and skipped; the run moves on after a cooldown
that gives an open circuit breaker time to admit its next trial call.

Timeouts nest: the breaker's per-call timeout sits inside the unit timeout,
which sits inside the optional whole-run deadline.

Failed and interrupted units are kept on the outcome as descriptors; with a
run ledger they are stored on the run, and retry_failed(run_id) replays just
those units.

Usage:
    async with ResilientClient.from_settings() as client:
        orchestrator = SyncOrchestrator(client, SQLModelRepository(engine))
        outcome = await orchestrator.run_backfill(2019, 2023)
        print(outcome.as_dict())
"""

import asyncio
import calendar
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from sqlmodel import SQLModel

from legis_sync.client.resilient import DataSource
from legis_sync.core.config import ENTITY_TYPES, Settings, settings
from legis_sync.core.context import sync_context
from legis_sync.core.errors import (
    ConversionError,
    PersistenceError,
    capture_exception,
    find_circuit_open,
    is_transient,
)
from legis_sync.core.logging_config import get_logger
from legis_sync.core.typing import utc_now
from legis_sync.services.conversion import convert
from legis_sync.services.repository import Repository
from legis_sync.services.run_ledger import SyncRunLedger

logger = get_logger(__name__)

# Entity types listed by date window rather than by parent record
WINDOW_ENTITIES = ("proposicao", "votacao")


@dataclass(frozen=True)
class SyncPolicy:
    page_size: int = 100
    max_pages: int = 100  # pagination safety ceiling
    page_delay: float = 0.1  # polite pause between pages and units
    unit_timeout: float = 600.0
    failure_cooldown: float = 30.0
    run_deadline: Optional[float] = None
    backfill_entities: Tuple[str, ...] = ("deputado", "proposicao", "votacao", "despesa")
    incremental_entities: Tuple[str, ...] = ("deputado", "proposicao", "votacao")
    lookback_days: int = 1

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "SyncPolicy":
        return cls(
            page_size=config.PAGE_SIZE,
            max_pages=config.MAX_PAGES,
            page_delay=config.PAGE_DELAY,
            unit_timeout=config.UNIT_TIMEOUT,
            failure_cooldown=config.FAILURE_COOLDOWN,
            run_deadline=config.RUN_DEADLINE,
            backfill_entities=tuple(config.BACKFILL_ENTITIES),
            incremental_entities=tuple(config.INCREMENTAL_ENTITIES),
            lookback_days=config.INCREMENTAL_LOOKBACK_DAYS,
        )


@dataclass(frozen=True)
class FetchUnit:
    """One independently retryable slice of a run. Only failed units outlive the run, as ledger descriptors."""

    entity_type: str
    label: str
    filters: Dict[str, Any] = field(default_factory=dict)
    window: Optional[Tuple[date, date]] = None
    context: Dict[str, Any] = field(default_factory=dict)  # fields the payload lacks

    def as_dict(self) -> Dict[str, Any]:
        """JSON-safe descriptor, stored on the run ledger so the unit can be retried later."""
        return {
            "entity_type": self.entity_type,
            "label": self.label,
            "filters": dict(self.filters),
            "window": [d.isoformat() for d in self.window] if self.window else None,
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FetchUnit":
        window = data.get("window")
        return cls(
            entity_type=data["entity_type"],
            label=data["label"],
            filters=dict(data.get("filters") or {}),
            window=(date.fromisoformat(window[0]), date.fromisoformat(window[1])) if window else None,
            context=dict(data.get("context") or {}),
        )


@dataclass
class SyncOutcome:
    mode: str
    run_id: Optional[str] = None
    units_ok: int = 0
    units_failed: int = 0
    fetched: int = 0
    persisted: int = 0
    skipped: int = 0  # payloads that failed conversion
    failed: int = 0  # records the repository rejected
    pages: int = 0
    aborted: bool = False  # run deadline expired
    errors: List[str] = field(default_factory=list)
    failed_units: List[Dict[str, Any]] = field(default_factory=list)  # FetchUnit descriptors
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return self.persisted

    @property
    def status(self) -> str:
        if self.units_failed and not self.units_ok:
            return "failed"
        if self.aborted and not self.units_ok:
            return "failed"
        if self.units_failed or self.failed or self.aborted:
            return "partial"
        return "success"

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["status"] = self.status
        data["processed"] = self.processed
        return data


def month_windows(year: int, today: date) -> Iterable[Tuple[int, date, date]]:
    """(month, first day, last day) for each month of `year` not in the future."""
    for month in range(1, 13):
        first = date(year, month, 1)
        if first > today:
            return
        last = date(year, month, calendar.monthrange(year, month)[1])
        yield month, first, min(last, today)


def months_between(start: date, end: date) -> Iterable[Tuple[int, int]]:
    """(year, month) of every calendar month touched by [start, end]."""
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)


async def _replay(units: List[FetchUnit]) -> AsyncIterator[FetchUnit]:
    for unit in units:
        yield unit


class SyncOrchestrator:
    """
    Drives backfill and incremental runs over a DataSource into a Repository.

    Neither run method raises for upstream, conversion or persistence
    failures; they are counted on the returned SyncOutcome. Only invalid
    arguments raise.
    """

    def __init__(
        self,
        source: DataSource,
        repository: Repository,
        policy: Optional[SyncPolicy] = None,
        ledger: Optional[SyncRunLedger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        today: Callable[[], date] = lambda: utc_now().date(),
    ):
        self.source = source
        self.repository = repository
        self.policy = policy or SyncPolicy()
        self.ledger = ledger
        self._sleep = sleep
        self._today = today

    async def run_backfill(
        self,
        start_year: int,
        end_year: int,
        entities: Optional[Iterable[str]] = None,
        deadline: Optional[float] = None,
    ) -> SyncOutcome:
        """
        Sync every entity for the years start_year..end_year (inclusive).

        Window entities run one unit per month, expenses one unit per known
        deputy per year. Deputies should come first so expenses can find them.
        """
        if start_year > end_year:
            raise ValueError(f"start_year {start_year} is after end_year {end_year}")
        entity_list = self._check_entities(entities, self.policy.backfill_entities)
        params = {"start_year": start_year, "end_year": end_year, "entities": entity_list}
        units = self._backfill_units(start_year, end_year, entity_list)
        return await self._run("backfill", params, units, deadline)

    async def run_incremental(
        self,
        entities: Optional[Iterable[str]] = None,
        deadline: Optional[float] = None,
    ) -> SyncOutcome:
        """Sync the most recent window only. Safe to re-run at any frequency."""
        entity_list = self._check_entities(entities, self.policy.incremental_entities)
        params = {"entities": entity_list, "lookback_days": self.policy.lookback_days}
        units = self._incremental_units(entity_list)
        return await self._run("incremental", params, units, deadline)

    async def retry_failed(self, run_id: str, deadline: Optional[float] = None) -> SyncOutcome:
        """
        Re-run only the units that failed (or were interrupted) in an earlier run.

        The new run is recorded with its own run_id, so units failing again can
        be retried from it in turn.
        """
        if self.ledger is None:
            raise ValueError("retrying failed units requires a run ledger")
        run = await asyncio.to_thread(self.ledger.get, run_id)
        if run is None:
            raise ValueError(f"unknown run {run_id}")
        units = [FetchUnit.from_dict(descriptor) for descriptor in run.failed_units or []]
        params = {"retry_of": run_id, "units": len(units)}
        return await self._run("retry", params, _replay(units), deadline)

    @staticmethod
    def _check_entities(entities: Optional[Iterable[str]], default: Tuple[str, ...]) -> List[str]:
        entity_list = list(entities) if entities is not None else list(default)
        unknown = [e for e in entity_list if e not in ENTITY_TYPES]
        if unknown:
            raise ValueError(f"unknown entity types {unknown}, expected any of {ENTITY_TYPES}")
        return entity_list

    async def _backfill_units(self, start_year: int, end_year: int, entities: List[str]) -> AsyncIterator[FetchUnit]:
        today = self._today()
        for entity_type in entities:
            if entity_type == "deputado":
                yield FetchUnit("deputado", "deputado")
            elif entity_type in WINDOW_ENTITIES:
                for year in range(start_year, end_year + 1):
                    for month, first, last in month_windows(year, today):
                        yield FetchUnit(entity_type, f"{entity_type} {year}-{month:02d}", window=(first, last))
            elif entity_type == "despesa":
                deputado_ids = await self._known_deputados()
                for year in range(start_year, min(end_year, today.year) + 1):
                    for deputado_id in deputado_ids:
                        yield FetchUnit(
                            "despesa",
                            f"despesa {year} deputado={deputado_id}",
                            filters={"deputado_id": deputado_id, "ano": year},
                            context={"deputado_id": deputado_id},
                        )

    async def _incremental_units(self, entities: List[str]) -> AsyncIterator[FetchUnit]:
        today = self._today()
        start = today - timedelta(days=self.policy.lookback_days)
        for entity_type in entities:
            if entity_type == "deputado":
                yield FetchUnit("deputado", "deputado")
            elif entity_type in WINDOW_ENTITIES:
                yield FetchUnit(entity_type, f"{entity_type} {start}..{today}", window=(start, today))
            elif entity_type == "despesa":
                deputado_ids = await self._known_deputados()
                # Every month the lookback window touches
                for year, month in months_between(start, today):
                    for deputado_id in deputado_ids:
                        yield FetchUnit(
                            "despesa",
                            f"despesa {year}-{month:02d} deputado={deputado_id}",
                            filters={"deputado_id": deputado_id, "ano": year, "mes": month},
                            context={"deputado_id": deputado_id},
                        )

    async def _known_deputados(self) -> List[Any]:
        ids = await asyncio.to_thread(self.repository.known_ids, "deputado")
        if not ids:
            logger.warning("no deputados stored, skipping despesa units")
        return ids

    async def _run(
        self,
        mode: str,
        params: Dict[str, Any],
        units: AsyncIterator[FetchUnit],
        deadline: Optional[float],
    ) -> SyncOutcome:
        if deadline is None:
            deadline = self.policy.run_deadline

        with sync_context(mode) as run_id:
            outcome = SyncOutcome(mode=mode, run_id=run_id)
            logger.info("sync started", **params)
            await self._ledger_call("start", run_id, mode, params)

            try:
                async with asyncio.timeout(deadline):
                    await self._run_units(units, outcome)
            except TimeoutError:
                outcome.aborted = True
                outcome.errors.append(f"run deadline of {deadline}s exceeded")
                logger.error("run deadline exceeded, stopping", deadline=deadline)
            except PersistenceError as e:
                # Planning needs the repository (known deputies); without it the run cannot go on
                outcome.aborted = True
                outcome.errors.append(str(e))
                capture_exception(e, context={"stage": "planning"})

            outcome.finished_at = utc_now()
            await self._ledger_call("finish", run_id, outcome)
            summary = {k: v for k, v in outcome.as_dict().items() if k not in ("errors", "failed_units")}
            logger.info("sync finished", **summary)
            return outcome

    async def _ledger_call(self, action: str, *args: Any) -> None:
        """The ledger is bookkeeping; its failures must not stop a run."""
        if self.ledger is None:
            return
        try:
            await asyncio.to_thread(getattr(self.ledger, action), *args)
        except Exception as e:
            capture_exception(e, context={"stage": f"ledger_{action}"}, level="warning")

    async def _run_units(self, units: AsyncIterator[FetchUnit], outcome: SyncOutcome) -> None:
        pause: Optional[float] = None
        async for unit in units:
            if pause:
                await self._sleep(pause)
            try:
                error = await self._run_unit(unit, outcome)
            except asyncio.CancelledError:
                # Interrupted by the run deadline or shutdown; keep it retryable
                outcome.failed_units.append(unit.as_dict())
                raise
            pause = self._cooldown_for(error) if error else self.policy.page_delay

    def _cooldown_for(self, error: BaseException) -> float:
        cooldown = self.policy.failure_cooldown
        open_error = find_circuit_open(error)
        if open_error is not None:
            cooldown = max(cooldown, open_error.retry_in)
        logger.info("cooling down after failed unit", seconds=round(cooldown, 2))
        return cooldown

    async def _run_unit(self, unit: FetchUnit, outcome: SyncOutcome) -> Optional[BaseException]:
        """Run one unit under its own timeout. Returns the error that failed it, if any."""
        try:
            async with asyncio.timeout(self.policy.unit_timeout):
                await self._page_through(unit, outcome)
        except Exception as e:
            outcome.units_failed += 1
            outcome.failed_units.append(unit.as_dict())
            outcome.errors.append(f"{unit.label}: {str(e) or type(e).__name__}")
            capture_exception(
                e,
                context={"entity_type": unit.entity_type, "unit": unit.label},
                level="warning" if is_transient(e) else "error",
            )
            return e

        outcome.units_ok += 1
        return None

    async def _page_through(self, unit: FetchUnit, outcome: SyncOutcome) -> None:
        for page in range(1, self.policy.max_pages + 1):
            if page > 1:
                await self._sleep(self.policy.page_delay)

            items = await self._fetch_page(unit, page)
            outcome.pages += 1
            if not items:
                logger.debug("unit complete", entity_type=unit.entity_type, unit=unit.label, pages=page)
                return

            outcome.fetched += len(items)
            records = self._convert(unit, items, outcome)
            await self._persist(unit, records, outcome)

        logger.warning(
            "page ceiling reached, stopping unit",
            entity_type=unit.entity_type,
            unit=unit.label,
            max_pages=self.policy.max_pages,
        )

    async def _fetch_page(self, unit: FetchUnit, page: int) -> List[Dict[str, Any]]:
        if unit.window is not None:
            start, end = unit.window
            return await self.source.list_by_window(
                unit.entity_type, start, end, unit.filters, page=page, page_size=self.policy.page_size
            )
        return await self.source.list_page(unit.entity_type, unit.filters, page=page, page_size=self.policy.page_size)

    def _convert(self, unit: FetchUnit, items: List[Dict[str, Any]], outcome: SyncOutcome) -> List[SQLModel]:
        records = []
        for item in items:
            try:
                records.append(convert(unit.entity_type, item, unit.context))
            except ConversionError as e:
                outcome.skipped += 1
                logger.warning("skipping invalid payload", unit=unit.label, error=str(e))
        return records

    async def _persist(self, unit: FetchUnit, records: List[SQLModel], outcome: SyncOutcome) -> None:
        """Upsert the batch; on failure fall back to one record at a time to isolate bad rows."""
        if not records:
            return
        try:
            outcome.persisted += await asyncio.to_thread(self.repository.upsert_batch, records)
            return
        except PersistenceError as e:
            logger.warning("batch upsert failed, retrying per record", unit=unit.label, size=len(records), error=str(e))

        for record in records:
            try:
                await asyncio.to_thread(self.repository.upsert, record)
            except PersistenceError as e:
                outcome.failed += 1
                capture_exception(e, context={"entity_type": unit.entity_type, "unit": unit.label})
            else:
                outcome.persisted += 1
