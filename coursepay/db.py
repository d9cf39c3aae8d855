from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
import structlog

from coursepay.core.config import settings

logger = structlog.get_logger(__name__)


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )

    # Managed Postgres drops idle connections; keep the pool small and verified
    return create_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
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
def set_statement_timeout(dbapi_connection, connection_record):
    """Bound every statement so no request waits on the database indefinitely."""
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        return
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '15s'")
    except Exception as e:
        logger.warning("Could not set statement timeout", error=str(e))
    finally:
        cursor.close()


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables():
    import coursepay.models  # noqa: F401  (registers tables)

    SQLModel.metadata.create_all(engine)
