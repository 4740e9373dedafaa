import pytest
from httpx import ASGITransport, AsyncClient

from referral_api.core.settings import settings


@pytest.mark.asyncio
async def test_readyz_reports_component_statuses(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] in {"ready", "degraded", "error"}
    components = payload["components"]
    assert components["database"]["status"] == "ready"
    assert components["reward_worker"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_readyz_flags_worker_that_is_not_running(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "reward_worker_enabled", True)
    app.state.reward_job_worker = type("StoppedWorker", (), {"is_running": False})()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/readyz")

    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["components"]["reward_worker"]["status"] == "starting"


@pytest.mark.asyncio
async def test_root_healthz_reports_version(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
