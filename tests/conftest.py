import datetime as dt
import logging
import pathlib
import sys
import uuid

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from syncledger.connectors import ErrorRecoveryLedger, RecoveryMetrics, SyncStateStore
from syncledger.core.config import RecoverySettings
from syncledger.models.session import create_schema, get_engine, get_sessionmaker

START = dt.datetime(2024, 1, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


class FrozenClock:
    """Deterministic replacement for ``datetime.now(timezone.utc)``."""

    def __init__(self, start: dt.datetime = START) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def engine(tmp_path):
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'syncledger.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_sessionmaker(engine=engine)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def settings() -> RecoverySettings:
    return RecoverySettings(max_attempts=5, retry_base_seconds=30)


@pytest.fixture
def metrics() -> RecoveryMetrics:
    return RecoveryMetrics()


@pytest.fixture
def ledger(settings, metrics, clock) -> ErrorRecoveryLedger:
    return ErrorRecoveryLedger(settings, metrics=metrics, clock=clock)


@pytest.fixture
def store(clock) -> SyncStateStore:
    return SyncStateStore(clock=clock)


@pytest.fixture
def clean_loggers():
    """Drop handlers installed by ``init_logging`` once the test is done."""

    yield
    for name in ("syncledger", "uvicorn.access"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
