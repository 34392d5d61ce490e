import logging
from typing import Callable, Iterator, TypeVar
from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from common.error_handling import TransientStoreError
from common.retry import RetryConfig, STORE_RETRY_CONFIG, retry_sync
from common.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

def make_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_conn, _):
            # let SQLAlchemy emit BEGIN so the whole unit holds the write lock
            dbapi_conn.isolation_level = None
            dbapi_conn.execute("PRAGMA foreign_keys=ON")

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

engine = make_engine(settings.sqlalchemy_url)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

def get_db() -> Iterator[Session]:
    with SessionLocal() as db:
        yield db

def run_atomic(session: Session, work: Callable[[], T], retry_config: RetryConfig = STORE_RETRY_CONFIG) -> T:
    """Run ``work`` and commit it as one transaction.

    Any failure rolls the whole unit back. Connection loss, lock timeouts and
    deadlocks surface as TransientStoreError and the unit is re-run from the
    start, up to ``retry_config.max_attempts`` times; every other error
    propagates unchanged.
    """
    def attempt() -> T:
        try:
            result = work()
            session.commit()
            return result
        except OperationalError as e:
            session.rollback()
            raise TransientStoreError("Store temporarily unavailable", original_error=e) from e
        except DBAPIError as e:
            session.rollback()
            if e.connection_invalidated:
                raise TransientStoreError("Store connection lost", original_error=e) from e
            raise
        except Exception:
            session.rollback()
            raise

    attempt.__name__ = getattr(work, "__name__", "unit_of_work")
    return retry_sync(attempt, retry_config)
