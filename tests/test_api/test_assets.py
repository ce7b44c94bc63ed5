"""API tests for /api/assets and /api/references."""


def test_register_asset(client):
    res = client.post("/api/assets", json={
        "asset_id": "A1", "id_code": "C1", "name": "Infusion pump", "serial": "S1",
        "price": "1500", "purchase_date": "",
    })
    assert res.status_code == 201
    data = res.json()
    assert data["asset_id"] == "A1"
    assert data["price"] == 1500
    assert data["purchase_date"] is None


def test_register_asset_missing_field(client):
    res = client.post("/api/assets", json={"asset_id": "A1", "id_code": "C1", "name": "Pump"})
    assert res.status_code == 422
    assert res.json()["field"] == "serial"


def test_register_asset_duplicate_serial(client, asset):
    res = client.post("/api/assets", json={"asset_id": "A2", "id_code": "C2", "name": "Pump", "serial": "S1"})
    assert res.status_code == 422
    assert res.json()["field"] == "serial"


def test_list_and_search_assets(client, asset):
    client.post("/api/assets", json={"asset_id": "A2", "id_code": "C2", "name": "Defibrillator", "serial": "S2"})
    assert len(client.get("/api/assets").json()) == 2
    found = client.get("/api/assets", params={"search": "defib"}).json()
    assert [a["asset_id"] for a in found] == ["A2"]


def test_get_asset_not_found(client):
    res = client.get("/api/assets/ghost")
    assert res.status_code == 404


def test_update_asset(client, asset):
    res = client.put("/api/assets/A1", json={"name": "Syringe pump"})
    assert res.status_code == 200
    assert res.json()["name"] == "Syringe pump"
    assert res.json()["serial"] == "S1"


def test_update_asset_unknown(client):
    res = client.put("/api/assets/ghost", json={"name": "x"})
    assert res.status_code == 404


def test_delete_asset(client, asset):
    assert client.delete("/api/assets/A1").status_code == 204
    assert client.get("/api/assets/A1").status_code == 404
    assert client.delete("/api/assets/A1").status_code == 204


def test_asset_status(client, asset):
    res = client.get("/api/assets/A1/status")
    assert res.json() == {"asset_id": "A1", "status": "available"}


def test_reference_quick_add(client):
    assert client.post("/api/references/brands", json={"value": " Philips "}).json() == {"value": "Philips"}
    client.post("/api/references/brands", json={"value": "Philips"})
    client.post("/api/references/vendors", json={"value": "MedSupply"})
    client.post("/api/references/departments", json={"value": "ICU"})
    res = client.post("/api/references/models", json={"brand": "Philips", "name": "MX450"})
    assert res.status_code == 201
    assert res.json() == {"brand": "Philips", "name": "MX450"}

    refs = client.get("/api/references").json()
    assert refs["brands"] == ["Philips"]
    assert refs["vendors"] == ["MedSupply"]
    assert refs["departments"] == ["ICU"]
    assert client.get("/api/references/models", params={"brand": "Philips"}).json() == ["MX450"]


def test_reference_blank_value_rejected(client):
    res = client.post("/api/references/departments", json={"value": "   "})
    assert res.status_code == 422


def test_register_asset_with_unregistered_model(client):
    client.post("/api/references/models", json={"brand": "Philips", "name": "MX450"})
    res = client.post("/api/assets", json={
        "asset_id": "A1", "id_code": "C1", "name": "Monitor", "serial": "S1",
        "brand": "Mindray", "model": "MX450",
    })
    assert res.status_code == 422
    assert res.json()["field"] == "model"


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
    assert res.headers["X-Content-Type-Options"] == "nosniff"
