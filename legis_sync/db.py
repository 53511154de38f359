from sqlmodel import create_engine, SQLModel
from sqlalchemy import event
from sqlalchemy.engine import Engine
import logging

from legis_sync.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine tuned for long-running sync jobs."""
    if database_url.startswith("sqlite"):
        # SQLite connections are shared between the event loop and scheduler threads
        return create_engine(database_url, echo=False, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,  # Allow burst connections
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Managed Postgres drops idle connections
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )


engine = build_engine(settings.DATABASE_URL)


@event.listens_for(Engine, "connect")
def set_connection_parameters(dbapi_connection, connection_record):
    """Per-connection settings: statement timeout on Postgres, foreign keys on SQLite."""
    module = type(dbapi_connection).__module__
    cursor = dbapi_connection.cursor()
    try:
        if module.startswith("sqlite3"):
            cursor.execute("PRAGMA foreign_keys=ON")
        else:
            cursor.execute("SET statement_timeout = '60s'")
    except Exception as e:
        logger.warning(f"Could not set connection parameters: {e}")
    finally:
        cursor.close()


def create_db_and_tables(target: Engine | None = None):
    # Register every table on SQLModel.metadata before creating
    import legis_sync.models  # noqa: F401

    SQLModel.metadata.create_all(target or engine)
