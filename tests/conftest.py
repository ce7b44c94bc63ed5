import os

# Keep the app lifespan off the on-disk database
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from medpool.database import Base
import medpool.models  # noqa: F401
from medpool.kv_store import MemoryBackend, StoreHandle
from medpool.ledger import LedgerStore

TEST_DB_URL = "sqlite:///:memory:"

_SIGNATURE = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


@pytest.fixture(scope="function")
def backend():
    return MemoryBackend()


@pytest.fixture(scope="function")
def store(backend):
    handle = StoreHandle(backend)
    yield handle
    handle.close()


@pytest.fixture(scope="function")
def ledger(store):
    ledger = LedgerStore(store, namespace="mp", optimistic=False, default_org_name="Hospital Name")
    yield ledger
    ledger.close()


@pytest.fixture(scope="function")
def sql_session_factory():
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # one shared in-memory DB for every session
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def signature():
    """A 1x1 PNG standing in for a captured signature."""
    return _SIGNATURE


@pytest.fixture
def asset_payload():
    def make(**overrides):
        payload = {
            "asset_id": "A1",
            "id_code": "C1",
            "name": "Infusion pump",
            "serial": "S1",
        }
        payload.update(overrides)
        return payload
    return make
