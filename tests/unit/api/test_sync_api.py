from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from strata.main import app
from strata.modules.inventory.domain.orchestrator import Orchestrator, RetryPolicy
from strata.shared.adapters.rate_limiter import RateLimiter
from tests.helpers import StaticAdapter, snapshot_item

SCOPE = "proj-1"


@pytest.fixture
def adapter() -> StaticAdapter:
    return StaticAdapter([[snapshot_item("snap-a"), snapshot_item("snap-b")]])


@pytest.fixture
def orchestrator(session_maker, clock, adapter) -> Orchestrator:
    orchestrator = Orchestrator(
        session_maker,
        policy=RetryPolicy(1.0, 2.0, 60.0, 2),
        group_policy=RetryPolicy(1.0, 2.0, 60.0, 1),
        clock=clock,
        sleep=AsyncMock(),
        rate_limiter_factory=lambda provider: RateLimiter(1000.0, provider=provider),
    )
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: adapter)
    return orchestrator


@pytest_asyncio.fixture
async def ac(orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Client over the app without its lifespan; the orchestrator is injected."""
    app.state.orchestrator = orchestrator
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client
    finally:
        del app.state.orchestrator


@pytest.mark.asyncio
async def test_trigger_sync_returns_final_task_state(ac):
    response = await ac.post(
        "/api/v1/inventory/sync",
        json={"provider": "gcp", "scope": SCOPE, "kind": "gcp_compute_snapshot"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "succeeded"
    assert body["item_count"] == 2
    assert body["attempts"] == 1

    listed = await ac.get("/api/v1/inventory/tasks", params={"limit": 5})
    assert [task["task_id"] for task in listed.json()] == [body["task_id"]]

    fetched = await ac.get(f"/api/v1/inventory/tasks/{body['task_id']}")
    assert fetched.json()["kind"] == "gcp_compute_snapshot"


@pytest.mark.asyncio
async def test_failed_sync_is_reported_as_error_payload(ac, adapter):
    async def broken(scope, page_token=None):
        raise ConnectionError("upstream down")

    adapter.fetch = broken

    response = await ac.post(
        "/api/v1/inventory/sync",
        json={"provider": "gcp", "scope": SCOPE, "kind": "gcp_compute_snapshot"},
    )

    assert response.status_code == 502
    body = response.json()
    assert body["code"] == "transport_error"
    assert "task_id" in body["details"]


@pytest.mark.asyncio
async def test_unknown_task_and_wrong_provider(ac):
    missing = await ac.get("/api/v1/inventory/tasks/nope")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    mismatch = await ac.post(
        "/api/v1/inventory/sync",
        json={"provider": "digitalocean", "scope": SCOPE, "kind": "gcp_compute_snapshot"},
    )
    assert mismatch.status_code == 404


@pytest.mark.asyncio
async def test_request_validation(ac):
    response = await ac.post("/api/v1/inventory/sync", json={"provider": "gcp", "scope": ""})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_group_sync_and_integrity_report(ac):
    group = await ac.post("/api/v1/inventory/sync/groups", json={"provider": "gcp", "scope": SCOPE})

    assert group.status_code == 200
    body = group.json()
    assert body["attempts"] == 1
    assert [task["state"] for task in body["tasks"]] == ["succeeded"]

    report = await ac.get(
        "/api/v1/inventory/integrity", params={"kind": "gcp_compute_snapshot", "scope": SCOPE}
    )
    assert report.status_code == 200
    assert report.json() == {
        "kind": "gcp_compute_snapshot",
        "scope": SCOPE,
        "ok": True,
        "violations": [],
    }
