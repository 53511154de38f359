"""
Idempotent persistence of converted records.

Rows are written with INSERT ... ON CONFLICT (natural key) DO UPDATE, so
replays, overlapping backfills and retried pages update the stored fact
instead of duplicating it. Concurrent writers are serialized by the
database's own unique constraint; nothing here takes application locks.
"""

from typing import Any, Dict, Hashable, List, Protocol, Sequence, Tuple, Type

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from legis_sync.core.db_utils import db_retry
from legis_sync.core.errors import PersistenceError
from legis_sync.core.logging_config import get_logger
from legis_sync.core.typing import utc_now
from legis_sync.models import ENTITY_MODELS

logger = get_logger(__name__)

_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}

# Columns never overwritten on conflict
_PRESERVED = ("id", "created_at")


class Repository(Protocol):
    def upsert(self, record: SQLModel) -> None: ...

    def upsert_batch(self, records: Sequence[SQLModel]) -> int: ...

    def known_ids(self, entity_type: str) -> List[Any]: ...


def natural_key(record: SQLModel) -> Tuple[Any, ...]:
    fields = getattr(type(record), "__natural_key__", None)
    if not fields:
        raise PersistenceError(f"{type(record).__name__} does not declare a natural key")
    return tuple(getattr(record, name) for name in fields)


class SQLModelRepository:
    """
    Repository over a SQLAlchemy engine (SQLite or PostgreSQL).

    Usage:
        repo = SQLModelRepository(engine)
        repo.upsert_batch([deputado, other_deputado])
        repo.known_ids("deputado")  # -> [204554, 220593, ...]
    """

    def __init__(self, engine: Engine):
        try:
            self._insert = _INSERTS[engine.dialect.name]
        except KeyError:
            raise ValueError(f"upsert is not supported on {engine.dialect.name}") from None
        self.engine = engine

    def upsert(self, record: SQLModel) -> None:
        self.upsert_batch([record])

    def upsert_batch(self, records: Sequence[SQLModel]) -> int:
        """
        Write all records in one transaction; either every row lands or none.

        Records may belong to different tables. Records sharing a natural key
        collapse to the last one in the batch before anything is written.

        Returns:
            Number of distinct rows written

        Raises:
            PersistenceError: the database rejected the batch
        """
        grouped = self._group(records)
        if not grouped:
            return 0
        try:
            self._write(grouped)
        except SQLAlchemyError as e:
            raise PersistenceError(f"upsert of {len(records)} records failed: {e}") from e
        return sum(len(rows) for rows in grouped.values())

    def _group(self, records: Sequence[SQLModel]) -> Dict[Type[SQLModel], List[Dict[str, Any]]]:
        now = utc_now()
        by_key: Dict[Type[SQLModel], Dict[Hashable, Dict[str, Any]]] = {}
        for record in records:
            row = record.model_dump(exclude={"id"})
            row["updated_at"] = now
            if row.get("created_at") is None:
                row["created_at"] = now
            by_key.setdefault(type(record), {})[natural_key(record)] = row
        return {model: list(rows.values()) for model, rows in by_key.items()}

    @db_retry(max_retries=3, base_delay=0.5)
    def _write(self, grouped: Dict[Type[SQLModel], List[Dict[str, Any]]]) -> None:
        with self.engine.begin() as conn:
            for model, rows in grouped.items():
                conn.execute(self._upsert_statement(model, rows))

    def _upsert_statement(self, model: Type[SQLModel], rows: List[Dict[str, Any]]):
        table = model.__table__  # type: ignore[attr-defined]
        key = list(model.__natural_key__)  # type: ignore[attr-defined]
        stmt = self._insert(table).values(rows)
        updates = {
            column.name: stmt.excluded[column.name]
            for column in table.columns
            if column.name not in key and column.name not in _PRESERVED
        }
        return stmt.on_conflict_do_update(index_elements=key, set_=updates)

    def known_ids(self, entity_type: str) -> List[Any]:
        """Natural ids already stored for a single-column-key entity."""
        try:
            model = ENTITY_MODELS[entity_type]
        except KeyError:
            raise ValueError(f"unknown entity type {entity_type!r}") from None
        key = model.__natural_key__  # type: ignore[attr-defined]
        if len(key) != 1:
            raise ValueError(f"{entity_type} has a composite natural key {key}")
        column = getattr(model, key[0])
        try:
            with Session(self.engine) as session:
                return list(session.exec(select(column).order_by(column)).all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not list {entity_type} ids: {e}") from e
