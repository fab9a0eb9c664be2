"""
Integration tests for the worker lifecycle.

Runs the real application (lifespan, settings, dependency wiring, console
event sink) on the in-memory storage backend. Only the quote verifier and
the key registrar are replaced by stubs.
"""

import json
import logging
import time
from base64 import b64encode
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from src.api.dependencies import get_attestation_verifier, get_key_registrar
from src.api.main import app
from src.config.settings import get_settings

OWNER = "admin.testnet"
PASSWORD = "integration-password"
PING_TIMEOUT_MS = 1_000


def basic_auth_header(account_id: str, password: str) -> dict:
    """Create HTTP BASIC AUTH header for testing."""
    encoded = b64encode(f"{account_id}:{password}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


OWNER_AUTH = basic_auth_header(OWNER, PASSWORD)


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch, verifier, key_registrar
) -> Generator[TestClient, None, None]:
    """Application client on the memory backend with stubbed collaborators."""
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("OWNER_ACCOUNT_ID", OWNER)
    monkeypatch.setenv("OWNER_PASSWORD", PASSWORD)
    monkeypatch.setenv("WORKER_PING_TIMEOUT_MS", str(PING_TIMEOUT_MS))
    monkeypatch.setenv("REGISTRY_ACCOUNT_ID", "registry.testnet")
    get_settings.cache_clear()

    app.dependency_overrides[get_attestation_verifier] = lambda: verifier
    app.dependency_overrides[get_key_registrar] = lambda: key_registrar
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        get_settings.cache_clear()


def events_in(caplog: pytest.LogCaptureFixture) -> list[dict]:
    """Worker lifecycle events logged by the console event sink."""
    envelopes = [
        json.loads(record.getMessage().removeprefix("EVENT_JSON:"))
        for record in caplog.records
        if record.getMessage().startswith("EVENT_JSON:")
    ]
    return [envelope for envelope in envelopes if envelope["event"].startswith("worker_")]


def setup_pool(client: TestClient, bundle) -> int:
    response = client.post(
        "/v1/admin/pools", json={"token_ids": ["wrap.near", "usdc.near"], "fee_bps": 30}, headers=OWNER_AUTH
    )
    assert response.status_code == 201
    approved = client.post("/v1/admin/measurements", json={"measurement": bundle.measurement}, headers=OWNER_AUTH)
    assert approved.status_code == 201
    return response.json()["pool_id"]


class TestWorkerLifecycle:
    """End-to-end registration, heartbeat and takeover."""

    def test_health_on_memory_backend(self, client: TestClient) -> None:
        assert client.get("/health").json() == {"status": "healthy"}

    def test_owner_bootstrapped_from_settings(self, client: TestClient) -> None:
        config = client.get("/v1/config").json()
        assert config["owner_id"] == OWNER
        assert config["worker_ping_timeout_ms"] == PING_TIMEOUT_MS

    def test_register_and_ping(
        self, client: TestClient, bundle_factory, verifier, key_registrar, caplog: pytest.LogCaptureFixture
    ) -> None:
        alice = bundle_factory("alice.testnet")
        verifier.add(alice)
        pool_id = setup_pool(client, alice)

        with caplog.at_level(logging.INFO):
            registered = client.post(f"/v1/pools/{pool_id}/workers", json=alice.request_body())
            pinged = client.post(
                f"/v1/workers/alice.testnet/ping?pool_id={pool_id}",
                headers=basic_auth_header("alice.testnet", alice.password),
            )

        assert registered.status_code == 201
        assert pinged.status_code == 200
        assert key_registrar.installs == [("pool-0.registry.testnet", "intents.testnet", alice.public_key)]

        pool = client.get(f"/v1/pools/{pool_id}").json()
        assert pool["worker_id"] == "alice.testnet"
        assert pool["state"] == "ACTIVE"
        assert pool["last_ping_timestamp_ms"] == pinged.json()["timestamp_ms"]

        names = [event["event"] for event in events_in(caplog)]
        assert names == ["worker_registered", "worker_pinged"]
        registered_event = events_in(caplog)[0]
        assert registered_event["standard"] == "worker-registry"
        assert registered_event["data"][0]["image_digest"] == alice.image_digest

    def test_second_worker_rejected_while_first_is_live(
        self, client: TestClient, bundle_factory, verifier
    ) -> None:
        alice, bob = bundle_factory("alice.testnet"), bundle_factory("bob.testnet")
        verifier.add(alice)
        verifier.add(bob)
        pool_id = setup_pool(client, alice)
        client.post(f"/v1/pools/{pool_id}/workers", json=alice.request_body())

        response = client.post(f"/v1/pools/{pool_id}/workers", json=bob.request_body())

        assert response.status_code == 409
        assert len(verifier.calls) == 1

    def test_stale_worker_replaced(
        self, client: TestClient, bundle_factory, verifier, key_registrar, caplog: pytest.LogCaptureFixture
    ) -> None:
        alice, bob = bundle_factory("alice.testnet"), bundle_factory("bob.testnet")
        verifier.add(alice)
        verifier.add(bob)
        pool_id = setup_pool(client, alice)
        client.post(f"/v1/pools/{pool_id}/workers", json=alice.request_body())

        time.sleep(PING_TIMEOUT_MS / 1000 + 0.1)
        assert client.get(f"/v1/pools/{pool_id}").json()["state"] == "STALE"

        with caplog.at_level(logging.INFO):
            response = client.post(f"/v1/pools/{pool_id}/workers", json=bob.request_body())

        assert response.status_code == 201
        assert key_registrar.evictions == [("pool-0.registry.testnet", "intents.testnet", alice.public_key)]
        assert [event["event"] for event in events_in(caplog)] == ["worker_removed", "worker_registered"]
        assert client.get(f"/v1/pools/{pool_id}").json()["worker_id"] == "bob.testnet"
        alice_auth = basic_auth_header("alice.testnet", alice.password)
        assert client.post("/v1/workers/alice.testnet/ping", headers=alice_auth).status_code == 409
        assert client.get("/v1/workers/alice.testnet").json()["key_installed"] is False

    def test_unauthenticated_ping_cannot_hold_stale_slot(self, client: TestClient, bundle_factory, verifier) -> None:
        alice, bob = bundle_factory("alice.testnet"), bundle_factory("bob.testnet")
        verifier.add(alice)
        verifier.add(bob)
        pool_id = setup_pool(client, alice)
        client.post(f"/v1/pools/{pool_id}/workers", json=alice.request_body())
        time.sleep(PING_TIMEOUT_MS / 1000 + 0.1)

        anonymous = client.post("/v1/workers/alice.testnet/ping")
        guessed = client.post(
            "/v1/workers/alice.testnet/ping",
            headers=basic_auth_header("alice.testnet", "guessed-worker-password"),
        )

        assert (anonymous.status_code, guessed.status_code) == (401, 401)
        assert client.get(f"/v1/pools/{pool_id}").json()["state"] == "STALE"
        assert client.post(f"/v1/pools/{pool_id}/workers", json=bob.request_body()).status_code == 201

    def test_revoked_measurement_blocks_ping(self, client: TestClient, bundle_factory, verifier) -> None:
        alice = bundle_factory("alice.testnet")
        verifier.add(alice)
        pool_id = setup_pool(client, alice)
        client.post(f"/v1/pools/{pool_id}/workers", json=alice.request_body())

        revoked = client.delete(f"/v1/admin/measurements/{alice.measurement}", headers=OWNER_AUTH)

        assert revoked.status_code == 200
        alice_auth = basic_auth_header("alice.testnet", alice.password)
        assert client.post("/v1/workers/alice.testnet/ping", headers=alice_auth).status_code == 403

    def test_failed_install_leaves_pool_empty(self, client: TestClient, bundle_factory, verifier, key_registrar) -> None:
        alice = bundle_factory("alice.testnet")
        verifier.add(alice)
        pool_id = setup_pool(client, alice)
        key_registrar.install_succeeds = False

        response = client.post(f"/v1/pools/{pool_id}/workers", json=alice.request_body())

        assert response.status_code == 502
        assert client.get(f"/v1/pools/{pool_id}").json()["state"] == "EMPTY"
        assert client.get("/v1/workers/alice.testnet").status_code == 404
