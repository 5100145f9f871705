import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeout
from sqlmodel import create_engine, Session
from sqlmodel import SQLModel

from errors import TransientFailure
from settings import DATABASE_URL, STORE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; Postgres does not.
# The SQLite busy timeout and the Postgres connect timeout bound every store call.
if DATABASE_URL.startswith("sqlite"):
    _connect_args = {"check_same_thread": False, "timeout": STORE_TIMEOUT_SECONDS}
else:
    _connect_args = {"connect_timeout": int(STORE_TIMEOUT_SECONDS)}


engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)

STORE_ERRORS = (OperationalError, PoolTimeout)


def utcnow() -> datetime:
    """Naive UTC now; every stored timestamp is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db():
    # make sure every table is registered on the metadata
    import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    return Session(engine, expire_on_commit=False)


@contextmanager
def session_scope():
    """A session whose lock timeouts and dropped connections raise TransientFailure."""
    session = get_session()
    try:
        yield session
    except STORE_ERRORS as exc:
        session.rollback()
        logger.warning("Store operation failed: %s", exc)
        raise TransientFailure() from exc
    finally:
        session.close()
