from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event, pool
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from config import get_settings
from errors import ConflictRetryable

T = TypeVar("T")

SQLITE_BUSY_TIMEOUT_MS = 15_000


def _sqlite_on_connect(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    for pragma in (
        "journal_mode=WAL",
        "foreign_keys=ON",
        f"busy_timeout={SQLITE_BUSY_TIMEOUT_MS}",
    ):
        cursor.execute(f"PRAGMA {pragma};")
    cursor.close()


def build_engine(database_url: Optional[str] = None, *, migrations: bool = False) -> Engine:
    """Engine for ``database_url`` (the configured store by default).

    SQLite connections are shared across the scheduler's worker threads and
    wait on locked rows instead of failing at once.
    """
    url = database_url or get_settings().database_url
    options: dict[str, object] = {}
    if migrations:
        options["poolclass"] = pool.NullPool
    if not url.startswith("sqlite"):
        return create_engine(url, **options)
    eng = create_engine(url, connect_args={"check_same_thread": False}, **options)
    event.listen(eng, "connect", _sqlite_on_connect)
    return eng


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: Optional[Callable[[], Session]] = None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _run_once(session: Session, unit: Callable[[], T]) -> T:
    try:
        result = unit()
        session.commit()
    except (StaleDataError, OperationalError) as exc:
        session.rollback()
        raise ConflictRetryable(str(exc)) from exc
    except Exception:
        session.rollback()
        raise
    return result


def run_atomic(
    session: Session, unit: Callable[[], T], *, attempts: Optional[int] = None
) -> T:
    """Run ``unit`` and commit it as one atomic unit of work.

    Optimistic-lock misses and locked rows roll the whole unit back and
    surface as ``ConflictRetryable``; the unit is re-run from scratch up to
    ``attempts`` times before the conflict is raised to the caller. Every
    other exception rolls back and propagates untouched.
    """
    attempts = attempts or get_settings().conflict_max_attempts
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        retry=retry_if_exception_type(ConflictRetryable),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            result = _run_once(session, unit)
    return result
