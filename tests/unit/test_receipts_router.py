"""Unit tests for the /receipts/agentic endpoints.

The orchestrator is built from stub agents and auth is overridden, so these
tests cover HTTP behaviour (validation, status codes, response shape) only.
"""

from __future__ import annotations

import base64
import io

import pytest
from httpx import AsyncClient

from agentic_ocr.core.config import settings
from agentic_ocr.core.security import get_current_user
from agentic_ocr.main import app
from agentic_ocr.modules.extraction.agents.orchestrator import get_orchestrator

PREFIX = "/api/v1/receipts"

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64
ADMIN_CLAIMS = {"sub": "auth0|admin", "permissions": ["admin:config"]}
USER_CLAIMS = {"sub": "auth0|user", "permissions": []}


@pytest.fixture
def orchestrator(make_orchestrator, make_agent):
    return make_orchestrator(
        detector=make_agent("vendor-detector", "detection", vendor_tag="walmart", confidence=95, cost=0.001),
        parsers=[
            ("walmart", make_agent("walmart-parser", confidence=92, cost=0.01)),
            ("generic", make_agent("generic-parser", confidence=80, cost=0.01)),
        ],
        fallbacks=[make_agent("baseline-ocr", "fallback", confidence=55, cost=0.005)],
    )


@pytest.fixture
def as_user(orchestrator):
    """Route requests to the stub orchestrator; returns a setter for the caller's claims."""
    claims = dict(ADMIN_CLAIMS)

    async def _current_user() -> dict:
        return claims

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_current_user] = _current_user

    def _set(new_claims: dict) -> None:
        claims.clear()
        claims.update(new_claims)

    yield _set
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# POST /agentic
# ---------------------------------------------------------------------------


async def test_process_base64_receipt(client: AsyncClient, as_user) -> None:
    resp = await client.post(
        f"{PREFIX}/agentic",
        json={"image_data": base64.b64encode(JPEG_BYTES).decode(), "file_name": "walmart.jpg"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["vendor"] == "WALMART SUPERCENTER"
    assert body["metadata"]["vendor_type"] == "walmart"
    assert body["metadata"]["agents_used"] == ["vendor-detector", "walmart-parser"]
    assert body["pipeline"]["total_cost"] == pytest.approx(0.011)
    assert body["error"] is None


async def test_process_without_image_returns_400(client: AsyncClient, as_user) -> None:
    resp = await client.post(f"{PREFIX}/agentic", json={"file_name": "nothing.jpg"})

    assert resp.status_code == 400
    assert "No image provided" in resp.json()["detail"]


async def test_process_rejects_negative_max_cost(client: AsyncClient, as_user) -> None:
    resp = await client.post(
        f"{PREFIX}/agentic",
        json={"image_url": "https://cdn.example.com/r.jpg", "options": {"max_cost": -1}},
    )

    assert resp.status_code == 422


async def test_unregistered_forced_vendor_returns_400(client: AsyncClient, as_user) -> None:
    resp = await client.post(
        f"{PREFIX}/agentic",
        json={"image_url": "https://cdn.example.com/r.jpg", "options": {"forced_vendor": "costco"}},
    )

    assert resp.status_code == 400


async def test_process_requires_auth(client: AsyncClient, orchestrator) -> None:
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        resp = await client.post(f"{PREFIX}/agentic", json={"image_url": "https://cdn.example.com/r.jpg"})
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code in (401, 403)


# ---------------------------------------------------------------------------
# POST /agentic/upload
# ---------------------------------------------------------------------------


async def test_upload_with_forced_vendor(client: AsyncClient, as_user) -> None:
    resp = await client.post(
        f"{PREFIX}/agentic/upload",
        files=[("file", ("receipt.jpg", io.BytesIO(JPEG_BYTES), "image/jpeg"))],
        data={"forced_vendor": "walmart"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["pipeline"]["stage1_vendor_detection"]["agent_name"] == "forced-vendor"
    assert body["pipeline"]["stage1_vendor_detection"]["skipped"] is True
    assert body["metadata"]["agents_used"] == ["walmart-parser"]


async def test_upload_unsupported_type_returns_400(client: AsyncClient, as_user) -> None:
    resp = await client.post(
        f"{PREFIX}/agentic/upload",
        files=[("file", ("data.csv", io.BytesIO(b"a,b,c"), "text/csv"))],
    )

    assert resp.status_code == 400
    assert "Unsupported image type" in resp.json()["detail"]


async def test_upload_too_large_returns_413(client: AsyncClient, as_user, monkeypatch) -> None:
    monkeypatch.setattr(settings, "extraction_max_file_size_mb", 0)

    resp = await client.post(
        f"{PREFIX}/agentic/upload",
        files=[("file", ("receipt.jpg", io.BytesIO(JPEG_BYTES), "image/jpeg"))],
    )

    assert resp.status_code == 413


async def test_upload_invalid_max_cost_returns_422(client: AsyncClient, as_user) -> None:
    resp = await client.post(
        f"{PREFIX}/agentic/upload",
        files=[("file", ("receipt.jpg", io.BytesIO(JPEG_BYTES), "image/jpeg"))],
        data={"max_cost": "-0.5"},
    )

    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# GET /agentic/status
# ---------------------------------------------------------------------------


async def test_status_lists_agents_and_config(client: AsyncClient, as_user) -> None:
    resp = await client.get(f"{PREFIX}/agentic/status")

    assert resp.status_code == 200
    body = resp.json()
    assert [a["name"] for a in body["agents"]] == [
        "vendor-detector",
        "generic-parser",
        "walmart-parser",
        "baseline-ocr",
    ]
    assert body["config"]["quality_threshold"] == 70
    assert body["capabilities"]["vendor_tags"] == ["generic", "walmart"]
    assert "application/pdf" in body["capabilities"]["supported_formats"]
    assert body["cost_estimate"]["total"]["max"] > 0


# ---------------------------------------------------------------------------
# PATCH /agentic/config
# ---------------------------------------------------------------------------


async def test_admin_updates_config(client: AsyncClient, as_user, orchestrator) -> None:
    resp = await client.patch(
        f"{PREFIX}/agentic/config",
        json={"config": {"quality_threshold": 80, "cost_budget": 0.02}},
    )

    assert resp.status_code == 200
    assert resp.json()["quality_threshold"] == 80
    assert orchestrator.config_store.current().cost_budget == pytest.approx(0.02)


async def test_preset_and_overrides_apply_together(client: AsyncClient, as_user) -> None:
    resp = await client.patch(
        f"{PREFIX}/agentic/config",
        json={"preset": "testing", "config": {"quality_threshold": 55}},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["mode"] == "testing"
    assert body["enable_specialized_parsing"] is False
    assert body["quality_threshold"] == 55


async def test_invalid_config_returns_422(client: AsyncClient, as_user, orchestrator) -> None:
    before = orchestrator.config_store.current()

    resp = await client.patch(f"{PREFIX}/agentic/config", json={"config": {"quality_threshold": 250}})

    assert resp.status_code == 422
    assert resp.json()["detail"]["errors"]
    assert orchestrator.config_store.current() is before


async def test_config_update_requires_admin(client: AsyncClient, as_user) -> None:
    as_user(USER_CLAIMS)

    resp = await client.patch(f"{PREFIX}/agentic/config", json={"config": {"quality_threshold": 80}})

    assert resp.status_code == 403
