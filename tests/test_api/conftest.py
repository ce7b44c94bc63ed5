import pytest
from fastapi.testclient import TestClient

from medpool.deps import get_ledger
from medpool.kv_store import MemoryBackend, StoreHandle
from medpool.ledger import LedgerStore
from medpool.main import app


@pytest.fixture(scope="function")
def api_ledger():
    ledger = LedgerStore(StoreHandle(MemoryBackend()), namespace="mp", optimistic=False)
    yield ledger
    ledger.close()


@pytest.fixture(scope="function")
def client(api_ledger):
    def override_get_ledger():
        api_ledger.sync()
        return api_ledger

    app.dependency_overrides[get_ledger] = override_get_ledger

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def asset(client):
    res = client.post("/api/assets", json={
        "asset_id": "A1", "id_code": "C1", "name": "Infusion pump", "serial": "S1",
    })
    assert res.status_code == 201
    return res.json()
