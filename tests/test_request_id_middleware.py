from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from gatekeeper.core.app_factory import create_app


@pytest.fixture
def client(clock, stores) -> TestClient:
    return TestClient(create_app(clock=clock, stores=stores))


def test_preserves_incoming_request_id_header(client: TestClient):
    incoming_id = "test-request-id-123"
    resp = client.get("/health", headers={"X-Request-ID": incoming_id})

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID") == incoming_id


def test_generates_request_id_when_missing(client: TestClient):
    resp = client.get("/health")

    assert resp.status_code == 200
    generated = resp.headers.get("X-Request-ID")
    assert generated == "req-000001"

    duration = resp.headers.get("X-Request-Duration-ms")
    assert duration is not None


def test_governed_events_carry_the_request_id(client: TestClient):
    received = []
    client.app.state.governor.pipeline.subscribe(received.append)

    resp = client.get("/api/things", headers={"X-Request-ID": "corr-42"})

    assert resp.status_code == 404
    assert resp.headers.get("X-Request-ID") == "corr-42"
    assert {e.request_id for e in received} == {"corr-42"}
