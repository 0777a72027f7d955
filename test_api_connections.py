"""
API Endpoint Tests

Drives the FastAPI app (with its lifespan) over an injected ConnectionService
whose clients are in-process fakes.
"""

import pytest
from fastapi import testclient

from api.server import create_app
from connectors.errors import AuthenticationError
from core.config import ErpSettings
from conftest import NETSUITE_CREDENTIALS, SAP_CREDENTIALS


@pytest.fixture
def app(service, encryption_key):
    return create_app(service=service, settings=ErpSettings(encryption_key=encryption_key))


@pytest.fixture
def client(app):
    with testclient.TestClient(app) as test_client:
        yield test_client


def create_netsuite(client, tenant_id="tenant-1"):
    response = client.post("/connections", json={
        "tenant_id": tenant_id,
        "provider": "netsuite",
        "environment": "sandbox",
        "name": "NetSuite sandbox",
        "credentials": NETSUITE_CREDENTIALS,
    })
    assert response.status_code == 201, response.text
    return response.json()


class TestConnectionRoutes:

    def test_create_never_returns_credentials(self, client):
        body = create_netsuite(client)
        assert body["status"] == "untested"
        assert body["provider"] == "netsuite"
        assert body["environment"] == "sandbox"
        assert "credentials" not in body
        for value in NETSUITE_CREDENTIALS.values():
            if "secret" in value:
                assert value not in str(body)

    def test_create_missing_fields(self, client):
        response = client.post("/connections", json={
            "tenant_id": "tenant-1",
            "provider": "sap_s4hana",
            "credentials": {"client_id": "abc", "client_secret": "hidden-value"},
        })
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert "api_base_url, token_endpoint" in detail
        assert "hidden-value" not in detail

    def test_create_unknown_provider(self, client):
        response = client.post("/connections", json={
            "tenant_id": "tenant-1",
            "provider": "dynamics",
            "credentials": {},
        })
        assert response.status_code == 422

    def test_list_and_get(self, client):
        created = create_netsuite(client)
        create_netsuite(client, tenant_id="tenant-2")

        listed = client.get("/connections", params={"tenant_id": "tenant-1"}).json()
        assert [c["id"] for c in listed] == [created["id"]]

        fetched = client.get(f"/connections/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "NetSuite sandbox"

    def test_get_unknown(self, client):
        assert client.get("/connections/does-not-exist").status_code == 404

    def test_connection_test_healthy(self, client):
        created = create_netsuite(client)
        response = client.post(f"/connections/{created['id']}/test")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["applied"] is True
        assert client.get(f"/connections/{created['id']}").json()["status"] == "healthy"

    def test_connection_test_failing(self, client, fake_factory):
        fake_factory.fail_with(AuthenticationError("signature rejected", status_code=401))
        created = create_netsuite(client)

        response = client.post(f"/connections/{created['id']}/test")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "failing"
        assert body["error"]["kind"] == "authentication_error"
        assert body["error"]["status_code"] == 401

    def test_rotate_resets_status(self, client):
        created = create_netsuite(client)
        client.post(f"/connections/{created['id']}/test")

        response = client.put(f"/connections/{created['id']}/credentials", json={
            "credentials": {**NETSUITE_CREDENTIALS, "token_secret": "ts-rotated"},
        })
        assert response.status_code == 200
        assert response.json()["status"] == "untested"

    def test_rotate_with_wrong_provider_fields(self, client):
        created = create_netsuite(client)
        response = client.put(f"/connections/{created['id']}/credentials", json={
            "credentials": SAP_CREDENTIALS,
        })
        assert response.status_code == 422

    def test_delete(self, client):
        created = create_netsuite(client)
        assert client.delete(f"/connections/{created['id']}").status_code == 204
        assert client.get(f"/connections/{created['id']}").status_code == 404
        assert client.delete(f"/connections/{created['id']}").status_code == 404


class TestHealthRoutes:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert set(body["providers"]) == {"netsuite", "sap_s4hana"}
        assert body["services"]["connections"] == "up"

    def test_ready_and_live(self, client):
        assert client.get("/ready").json() == {"status": "ready"}
        assert client.get("/live").json() == {"status": "alive"}

    def test_metrics(self, client):
        created = create_netsuite(client)
        client.post(f"/connections/{created['id']}/test")
        summary = client.get("/metrics").json()
        assert summary["health_checks"]["healthy"] == 1
        assert set(summary) == {"requests", "auth", "health_checks", "latency"}

    def test_not_ready_before_startup(self, app):
        # Without the context manager the lifespan never runs
        client = testclient.TestClient(app)
        assert client.get("/ready").status_code == 503
        assert client.get("/connections", params={"tenant_id": "t"}).status_code == 503


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
