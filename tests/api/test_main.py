"""Tests for app factory and basic middleware."""
import pytest
from training_centre.api.main import create_app
from training_centre.api.config import ApiSettings


def test_create_app():
    app = create_app(ApiSettings(job_db_path=":memory:"))
    assert app.title == "Training Centre API"


def test_openapi_schema():
    app = create_app(ApiSettings(job_db_path=":memory:"))
    schema = app.openapi()
    assert "paths" in schema
    assert "/api/health" in schema["paths"]
    assert "/api/jobs/{job_id}/cancel" in schema["paths"]


def test_routes_registered():
    app = create_app(ApiSettings(job_db_path=":memory:"))
    paths = {r.path for r in app.routes}
    expected = {
        "/api/health",
        "/api/jobs",
        "/api/jobs/{job_id}",
        "/api/jobs/{job_id}/events",
        "/api/jobs/{job_id}/cancel",
        "/api/jobs/{job_id}/poll",
        "/api/jobs/{job_id}/artifacts",
        "/api/metrics/performance",
        "/api/logs",
    }
    for ep in expected:
        assert ep in paths, f"Missing route: {ep}"


@pytest.mark.asyncio
async def test_404_wrapped(client):
    resp = await client.get("/api/nonexistent")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_request_validation_wrapped(client):
    resp = await client.get("/api/jobs", params={"limit": "many"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["ok"] is False
    assert "limit" in body["error"]


@pytest.mark.asyncio
async def test_unhandled_error_wrapped(app, monkeypatch):
    import training_centre.api.deps.providers as _prov
    from httpx import ASGITransport, AsyncClient

    async def _boom(*args, **kwargs):
        raise RuntimeError("db exploded")

    monkeypatch.setattr(_prov.get_job_store(), "list_jobs", _boom)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        resp = await ac.get("/api/jobs")
    assert resp.status_code == 500
    body = resp.json()
    assert body["ok"] is False
    assert body["error"] == "Internal server error"


@pytest.mark.asyncio
async def test_cors_headers(client):
    resp = await client.options(
        "/api/health",
        headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "GET"},
    )
    # CORS middleware should respond (may be 200 or 405 depending on FastAPI version)
    assert resp.status_code in (200, 405, 400)
