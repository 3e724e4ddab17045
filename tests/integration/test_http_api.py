"""
Integration tests for the HTTP API.

Tests cover:
- Health and action listing
- Envelope over HTTP with status codes
- Session header enforcement
- Invalid JSON bodies
"""

import tempfile

import pytest
from fastapi.testclient import TestClient

from dbaas.hera_server._version import __version__
from dbaas.hera_server.api import create_app
from dbaas.hera_server.config import ServerConfig, StorageConfig

ORG = "org-salon"


@pytest.fixture
def client():
    """Create a test client over a temporary database."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config = ServerConfig(storage=StorageConfig(data_dir=tmpdir, wal_mode=False))
        with TestClient(create_app(config)) as test_client:
            yield test_client


def envelope(action, payload=None, organization_id=ORG, actor_user_id="user-1"):
    return {
        "action": action,
        "organization_id": organization_id,
        "actor_user_id": actor_user_id,
        "payload": payload or {},
    }


class TestHttpApi:
    """Tests for the FastAPI app."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "service": "hera-server",
            "version": __version__,
        }

    def test_list_actions(self, client):
        response = client.get("/v1/rpc")
        body = response.json()
        assert set(body) == {
            "dynamic-data",
            "entities",
            "organizations",
            "relationships",
            "transactions",
        }
        assert "BULK_UPSERT" in body["relationships"]
        assert "REVERSE" in body["transactions"]

    def test_create_and_read_entity(self, client):
        created = client.post(
            "/v1/rpc/entities",
            json=envelope(
                "CREATE",
                {
                    "entity_type": "customer",
                    "entity_name": "Jane",
                    "smart_code": "HERA.SALON.CUSTOMER.ENTITY.PERSON.v1",
                    "dynamic": {"phone": {"field_type": "text", "value": "555-0100"}},
                },
            ),
        )
        assert created.status_code == 200
        entity_id = created.json()["entity_id"]

        read = client.post("/v1/rpc/entities", json=envelope("READ", {"entity_id": entity_id}))
        body = read.json()
        assert body["success"] is True
        assert body["action"] == "READ"
        assert body["data"]["dynamic"] == {"phone": "555-0100"}

    def test_error_status_codes(self, client):
        not_found = client.post(
            "/v1/rpc/transactions", json=envelope("READ", {"transaction_id": "missing"})
        )
        assert not_found.status_code == 404
        assert not_found.json()["error"] == "TXN_NOT_FOUND"

        invalid = client.post(
            "/v1/rpc/entities",
            json=envelope(
                "CREATE",
                {"entity_type": "customer", "entity_name": "Jane", "smart_code": "bad"},
            ),
        )
        assert invalid.status_code == 400
        assert invalid.json()["error"] == "SMART_CODE_INVALID"

    def test_session_header_must_match(self, client):
        response = client.post(
            "/v1/rpc/entities",
            json=envelope("QUERY"),
            headers={"X-Organization-ID": "org-rival"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "ORG_MISMATCH"

        response = client.post(
            "/v1/rpc/entities",
            json=envelope("QUERY"),
            headers={"X-Organization-ID": ORG},
        )
        assert response.status_code == 200

    def test_invalid_json(self, client):
        response = client.post(
            "/v1/rpc/entities",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "PAYLOAD_INVALID"

    def test_unknown_resource(self, client):
        response = client.post("/v1/rpc/ledgers", json=envelope("QUERY"))
        assert response.status_code == 404
