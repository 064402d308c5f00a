import pytest

from conftest import FakeResponse, sku, user
from nexus_msp import web
from nexus_msp.m365_client import GRAPH_BASE_URL


_real_get_graph_client = web._get_graph_client


@pytest.fixture
def app(tmp_path, monkeypatch, graph):
    settings = tmp_path / "settings.yaml"
    settings.write_text(
        "m365:\n  currency: USD\n"
        f"storage:\n  data_file: {tmp_path / 'store.json'}\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(web, "_get_graph_client", lambda app, config: graph)
    flask_app = web.create_app(settings)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def _serve_tenant(session):
    session.add_pages("/subscribedSkus", [sku("E3", "ENTERPRISEPACK", 100, 2)], page_size=5)
    session.add_pages(
        "/users",
        [user("u1", "Ada", "ada@example.com", "E3"), user("u2", "Bob", "bob@example.com", "E3")],
        page_size=1,
    )


def test_status_before_any_sync(client):
    response = client.get("/api/integrations/m365/status")

    assert response.status_code == 200
    assert response.get_json() == {
        "success": True,
        "data": {"status": "not_connected", "lastSyncedAt": None, "summary": None},
    }


def test_test_connection(client, session):
    _serve_tenant(session)

    response = client.post("/api/integrations/m365/test")

    assert response.get_json()["data"] == {"success": True, "skuCount": 1}


def test_sync_then_status(client, session):
    _serve_tenant(session)

    sync = client.post("/api/integrations/m365/sync").get_json()["data"]
    status = client.get("/api/integrations/m365/status").get_json()["data"]

    assert sync["skuCount"] == 1
    assert sync["userCount"] == 2
    assert sync["newClients"] == 2
    assert sync["state"]["status"] == "connected"
    assert status["status"] == "connected"
    assert status["lastSyncedAt"] == sync["syncedAt"]
    assert status["summary"] == sync["summary"]
    assert status["summary"]["totalAssignedLicenses"] == 2

    pools = client.get("/api/license-pools").get_json()["data"]
    assert pools == [
        {"id": "m365-E3", "name": "ENTERPRISEPACK", "serviceId": "m365Sku:E3", "totalSeats": 100, "assignedSeats": 2}
    ]


def test_sync_graph_failure_reports_status_and_body(client, session, app):
    session.add_pages("/subscribedSkus", [sku("E3", "ENTERPRISEPACK", 100, 2)], page_size=5)
    session.add(f"{GRAPH_BASE_URL}/users", FakeResponse(401, text="token expired"))

    response = client.post("/api/integrations/m365/sync")

    payload = response.get_json()
    assert response.status_code == 502
    assert payload["success"] is False
    assert payload["graphStatus"] == 401
    assert payload["graphBody"] == "token expired"
    assert client.get("/api/clients").get_json()["data"] == []


def test_missing_credentials_are_reported(client, monkeypatch, app):
    monkeypatch.setattr(web, "_get_graph_client", _real_get_graph_client)
    app.config.pop("_M365_CLIENT", None)

    response = client.post("/api/integrations/m365/test")

    payload = response.get_json()
    assert response.status_code == 400
    assert payload["missingKey"] == "tenant_id"


def test_integration_state_upsert_and_fetch(client):
    created = client.post(
        "/api/integration-states/microsoft-365",
        json={"status": "connected", "config": {"tenantId": "t", "clientSecret": "shh", "defaultSeatCost": 1800}},
    ).get_json()["data"]
    updated = client.post(
        "/api/integration-states/microsoft-365", json={"config": {"currency": "EUR"}}
    ).get_json()["data"]
    fetched = client.get("/api/integration-states/microsoft-365").get_json()["data"]

    assert created["connectedAt"] == updated["connectedAt"]
    assert fetched["config"] == {"tenantId": "t", "clientSecret": "********", "defaultSeatCost": 1800, "currency": "EUR"}
    assert [state["id"] for state in client.get("/api/integration-states").get_json()["data"]] == ["microsoft-365"]


def test_integration_state_validation(client):
    assert client.post("/api/integration-states/x", json={}).status_code == 400
    assert client.post("/api/integration-states/x", json={"status": "bogus"}).status_code == 400
    assert client.get("/api/integration-states/x").get_json()["data"] == {"id": "x", "status": "not_connected"}


def test_client_crud_writes_activity(client):
    created = client.post(
        "/api/clients", json={"name": "Acme", "contactPerson": "Jane", "email": "jane@acme.example"}
    ).get_json()["data"]
    client_id = created["id"]

    updated = client.put(f"/api/clients/{client_id}", json={"status": "inactive"}).get_json()["data"]
    deleted = client.delete(f"/api/clients/{client_id}").get_json()["data"]
    stats = client.get("/api/dashboard-stats").get_json()["data"]

    assert created["status"] == "active"
    assert updated["status"] == "inactive"
    assert deleted == {"id": client_id, "deleted": True}
    assert client.get(f"/api/clients/{client_id}").status_code == 404
    assert sorted(a["type"] for a in stats["recentActivity"]) == ["client_created", "client_deleted", "client_updated"]


def test_client_create_requires_fields(client):
    response = client.post("/api/clients", json={"name": "Acme"})

    assert response.status_code == 400
    assert "contactPerson" in response.get_json()["error"]


def test_subscriptions_and_dashboard(client):
    client_id = client.post(
        "/api/clients", json={"name": "Acme", "contactPerson": "Jane", "email": "jane@acme.example"}
    ).get_json()["data"]["id"]
    service_id = client.post("/api/services", json={"name": "Backup", "category": "IaaS"}).get_json()["data"]["id"]
    client.post(
        "/api/subscriptions",
        json={"clientId": client_id, "serviceId": service_id, "plan": "Pro", "quantity": 3, "cost": 4500, "status": "active"},
    )
    client.post("/api/internal-subscriptions", json={"serviceId": service_id, "cost": 999, "status": "active"})

    stats = client.get("/api/dashboard-stats").get_json()["data"]
    external = client.get(f"/api/clients/{client_id}/subscriptions").get_json()["data"]
    internal = client.get("/api/internal-subscriptions").get_json()["data"]

    assert stats["totalMrr"] == 4500
    assert stats["activeSubscriptionsCount"] == 1
    assert stats["activeClients"] == 1
    assert len(external) == 1 and external[0]["quantity"] == 3
    assert internal[0]["clientId"] == "internal"


def test_license_assignment_endpoints(client):
    pool = client.post("/api/license-pools", json={"name": "E3", "serviceId": "svc", "totalSeats": 10}).get_json()["data"]
    assignment = client.post(
        "/api/license-assignments", json={"poolId": pool["id"], "clientId": "c1", "assignedSeats": 4}
    ).get_json()["data"]

    client.put(f"/api/license-assignments/{assignment['id']}", json={"assignedSeats": 6})

    pools = client.get("/api/license-pools").get_json()["data"]
    assignments = client.get("/api/clients/c1/license-assignments").get_json()["data"]
    assert pools[0]["assignedSeats"] == 6
    assert assignments[0]["assignedSeats"] == 6
    assert client.delete(f"/api/license-assignments/{assignment['id']}").status_code == 200
    assert client.delete(f"/api/license-assignments/{assignment['id']}").status_code == 404
