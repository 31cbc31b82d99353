"""
Test Suite: FastAPI Contract & Guardrail Validation

Purpose
-------
Validates the public HTTP contract of the dispatch service without calling
real providers. The dispatch services are wired from in-memory repositories
and scripted provider adapters (tests/conftest.py) and injected through
FastAPI dependency overrides.

What This Test Suite Covers
---------------------------
1. Health & availability (`/health`)
2. Authentication: X-API-Key on every /v1 route, admin keys on admin routes
3. Input validation for generate requests
4. Mapping of dispatch results to HTTP statuses
   - 200 success, 202 pending, 402 insufficient credits, 400 fatal failure,
     502 all providers failed, 503 nothing configured
5. Job polling, credit balance/top-up and chain administration endpoints

How These Tests Work
--------------------
- `deps.get_services` is overridden with a DispatchServices built from the
  shared harness fixture
- TestClient is used without entering its context, so the lifespan handler
  (which shuts services down) does not run
"""

import pytest
from fastapi.testclient import TestClient

from dispatch.admin import CatalogAdmin
from dispatch.factory import DispatchServices
from dispatch.routing_types import Modality, Tier
from server import dependencies as deps
from server.app import create_app

API_KEY = "client-key"
ADMIN_KEY = "admin-key"
HEADERS = {"X-API-Key": API_KEY}
ADMIN_HEADERS = {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def api(monkeypatch, harness):
    monkeypatch.setenv("API_KEYS", f"{API_KEY},{ADMIN_KEY}")
    monkeypatch.setenv("ADMIN_API_KEYS", ADMIN_KEY)
    app = create_app()

    if hasattr(deps.get_services, "_instance"):
        delattr(deps.get_services, "_instance")

    def _services():
        engine = harness.engine()
        return DispatchServices(
            engine=engine,
            admin=CatalogAdmin(harness.catalog_repo, harness.chain_repo, engine.resolver),
            ledger=engine.ledger,
            invoker=harness._invokers[-1],
        )

    services = {}

    def _get_services():
        # Built on first use so tests can script the harness beforehand
        if "instance" not in services:
            services["instance"] = _services()
        return services["instance"]

    app.dependency_overrides[deps.get_services] = _get_services
    return TestClient(app), harness


def _generate_body(**overrides):
    body = {
        "tier": "creator",
        "modality": "image",
        "account_id": "acct-1",
        "payload": {"prompt": "a red fox"},
        "request_id": "req-1",
    }
    body.update(overrides)
    return body


# ============================================================================
# Health & auth
# ============================================================================


@pytest.mark.unit
def test_health(api):
    client, _ = api

    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["storage"]


@pytest.mark.unit
def test_generate_requires_api_key(api):
    client, _ = api

    assert client.post("/v1/generate", json=_generate_body()).status_code == 401
    assert client.post("/v1/generate", json=_generate_body(), headers={"X-API-Key": "wrong"}).status_code == 401


@pytest.mark.unit
def test_unconfigured_api_keys_is_a_server_error(api, monkeypatch):
    client, _ = api
    monkeypatch.delenv("API_KEYS")

    assert client.get("/v1/credits/acct-1", headers=HEADERS).status_code == 500


@pytest.mark.unit
def test_admin_routes_require_admin_key(api):
    client, _ = api

    assert client.get("/v1/admin/fallback", headers=HEADERS).status_code == 403
    assert client.get("/v1/admin/fallback", headers=ADMIN_HEADERS).status_code == 200
    assert client.post("/v1/credits/acct-1/grant", json={"amount": 5, "reference_id": "r"}, headers=HEADERS).status_code == 403


# ============================================================================
# Generate
# ============================================================================


@pytest.mark.unit
@pytest.mark.parametrize(
    "body",
    [
        _generate_body(tier="all"),
        _generate_body(tier="platinum"),
        _generate_body(modality="hologram"),
        _generate_body(account_id=""),
        _generate_body(timeout_s=0),
    ],
)
def test_generate_rejects_invalid_requests(api, body):
    client, _ = api

    assert client.post("/v1/generate", json=body, headers=HEADERS).status_code == 422


@pytest.mark.unit
def test_generate_success(api):
    client, harness = api
    x = harness.add_model("provx", "x-1", 5, outcome=harness.retryable())
    y = harness.add_model("provy", "y-1", 3)
    harness.chain(Tier.CREATOR, x, y)
    harness.open_account(balance=10)

    response = client.post("/v1/generate", json=_generate_body(), headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["provider"] == "provy"
    assert body["credits_charged"] == 3
    assert body["balance_after"] == 7
    assert [a["status"] for a in body["attempts"]] == ["retryable_failure", "success"]
    assert body["error"] is None


@pytest.mark.unit
@pytest.mark.parametrize("request_id", [None, "", "x" * 129])
def test_generate_requires_caller_request_id(api, request_id):
    client, harness = api
    harness.chain(Tier.CREATOR, harness.add_model("provx", "free", 0))

    body = _generate_body()
    if request_id is None:
        del body["request_id"]
    else:
        body["request_id"] = request_id
    response = client.post("/v1/generate", json=body, headers=HEADERS)

    assert response.status_code == 422
    assert harness.calls == []


@pytest.mark.unit
def test_generate_repeated_request_id_is_409(api):
    client, harness = api
    harness.chain(Tier.CREATOR, harness.add_model("provy", "y-1", 3))
    harness.open_account(balance=10)

    first = client.post("/v1/generate", json=_generate_body(request_id="retry-me"), headers=HEADERS)
    retry = client.post("/v1/generate", json=_generate_body(request_id="retry-me"), headers=HEADERS)

    assert first.status_code == 200
    assert retry.status_code == 409
    assert retry.json()["error"]["code"] == "duplicate_request"
    assert retry.json()["error"]["details"]["credits_charged"] == 3
    assert harness.calls == ["provy/y-1"]
    assert harness.balance() == 7


@pytest.mark.unit
def test_generate_pending_is_202(api):
    client, harness = api
    y = harness.add_model("provy", "y-1", 4, modality=Modality.VIDEO, outcome=harness.pending("job-7"))
    harness.chain(Tier.CREATOR, y, modality=Modality.VIDEO)
    harness.open_account(balance=10)

    response = client.post("/v1/generate", json=_generate_body(modality="video"), headers=HEADERS)

    assert response.status_code == 202
    assert response.json()["job_id"] == "job-7"


@pytest.mark.unit
def test_generate_failure_status_mapping(api):
    client, harness = api
    broke = harness.add_model("provx", "pricey", 100)
    bad = harness.add_model("provy", "strict", 1, modality=Modality.TEXT, outcome=harness.fatal())
    down = harness.add_model("provz", "down", 1, modality=Modality.AUDIO, outcome=harness.retryable())
    harness.chain(Tier.CREATOR, broke)
    harness.chain(Tier.CREATOR, bad, modality=Modality.TEXT)
    harness.chain(Tier.CREATOR, down, modality=Modality.AUDIO)
    harness.open_account(balance=5)

    insufficient = client.post("/v1/generate", json=_generate_body(request_id="r1"), headers=HEADERS)
    fatal = client.post("/v1/generate", json=_generate_body(modality="text", request_id="r2"), headers=HEADERS)
    failed = client.post("/v1/generate", json=_generate_body(modality="audio", request_id="r3"), headers=HEADERS)
    nothing = client.post("/v1/generate", json=_generate_body(modality="video", request_id="r4"), headers=HEADERS)

    assert insufficient.status_code == 402
    assert insufficient.json()["error"]["details"] == {"required": 100, "available": 5}
    assert fatal.status_code == 400
    assert fatal.json()["error"]["code"] == "fatal_failure"
    assert failed.status_code == 502
    assert nothing.status_code == 503


# ============================================================================
# Jobs
# ============================================================================


@pytest.mark.unit
def test_job_polling(api):
    client, harness = api
    harness.add_model("fal", "fal-ai/kling-video", 4, modality=Modality.VIDEO)
    harness.provider("fal").poll_script["job-9"] = harness.success({"video_url": "https://cdn/v.mp4"})

    done = client.get("/v1/jobs/fal/fal-ai/kling-video/job-9", headers=HEADERS)
    unknown = client.get("/v1/jobs/fal/not-a-model/job-9", headers=HEADERS)

    assert done.status_code == 200
    assert done.json()["status"] == "success"
    assert done.json()["payload"] == {"video_url": "https://cdn/v.mp4"}
    assert unknown.status_code == 404


# ============================================================================
# Credits
# ============================================================================


@pytest.mark.unit
def test_credit_balance_and_grant(api):
    client, harness = api
    harness.open_account(balance=10, monthly_allowance=100)

    granted = client.post(
        "/v1/credits/acct-1/grant",
        json={"amount": 15, "kind": "bonus", "reference_id": "promo-1"},
        headers=ADMIN_HEADERS,
    )
    balance = client.get("/v1/credits/acct-1", headers=HEADERS)

    assert granted.status_code == 200
    assert granted.json()["balance_after"] == 25
    body = balance.json()
    assert body["balance"] == 25
    assert body["available"] == 25
    assert body["monthly_allowance"] == 100
    assert [t["reference_id"] for t in body["recent_transactions"]] == ["promo-1"]


@pytest.mark.unit
def test_credit_errors(api):
    client, harness = api
    harness.open_account(balance=10)

    missing = client.get("/v1/credits/ghost", headers=HEADERS)
    overdraw = client.post(
        "/v1/credits/acct-1/grant",
        json={"amount": -50, "kind": "adjustment", "reference_id": "fix-1"},
        headers=ADMIN_HEADERS,
    )
    usage = client.post(
        "/v1/credits/acct-1/grant",
        json={"amount": 5, "kind": "usage", "reference_id": "fix-2"},
        headers=ADMIN_HEADERS,
    )
    ghost = client.post(
        "/v1/credits/ghost/grant", json={"amount": 5, "reference_id": "fix-3"}, headers=ADMIN_HEADERS
    )

    assert missing.status_code == 404
    assert overdraw.status_code == 400
    assert usage.status_code == 400
    assert ghost.status_code == 404


# ============================================================================
# Admin
# ============================================================================


@pytest.mark.unit
def test_admin_chain_lifecycle(api):
    client, harness = api
    harness.add_model("p", "a", 1)
    harness.add_model("p", "b", 2)

    created = client.post(
        "/v1/admin/fallback",
        json={"tier": "studio", "modality": "image", "priority": 1, "provider_id": "p", "model_id": "a"},
        headers=ADMIN_HEADERS,
    )
    assert created.status_code == 200
    entry_id = created.json()["id"]

    replaced = client.put(
        "/v1/admin/fallback",
        json={
            "tier": "studio",
            "modality": "image",
            "models": [{"provider_id": "p", "model_id": "b"}, {"provider_id": "p", "model_id": "a"}],
        },
        headers=ADMIN_HEADERS,
    )
    assert [e["model_id"] for e in replaced.json()] == ["b", "a"]

    ids = [e["id"] for e in replaced.json()]
    reordered = client.put(
        "/v1/admin/fallback/order",
        json={"tier": "studio", "modality": "image", "priorities": {ids[0]: 2, ids[1]: 1}},
        headers=ADMIN_HEADERS,
    )
    assert [e["model_id"] for e in reordered.json()] == ["a", "b"]

    listed = client.get("/v1/admin/fallback?tier=studio", headers=ADMIN_HEADERS).json()
    assert [e["model_id"] for e in listed["chains"]["studio"]["image"]] == ["a", "b"]

    assert client.delete(f"/v1/admin/fallback/{ids[0]}", headers=ADMIN_HEADERS).status_code == 200
    assert client.delete(f"/v1/admin/fallback/{ids[0]}", headers=ADMIN_HEADERS).status_code == 404
    assert client.delete(f"/v1/admin/fallback/{entry_id}", headers=ADMIN_HEADERS).status_code == 404


@pytest.mark.unit
def test_admin_validation_errors(api):
    client, harness = api
    harness.add_model("p", "a", 1)
    harness.add_model("p", "off", 1, is_active=False)

    unknown = client.post(
        "/v1/admin/fallback",
        json={"tier": "studio", "modality": "image", "priority": 1, "provider_id": "p", "model_id": "zzz"},
        headers=ADMIN_HEADERS,
    )
    duplicate = client.put(
        "/v1/admin/fallback",
        json={
            "tier": "studio",
            "modality": "image",
            "models": [{"provider_id": "p", "model_id": "a"}, {"provider_id": "p", "model_id": "a"}],
        },
        headers=ADMIN_HEADERS,
    )
    inactive_default = client.put(
        "/v1/admin/models/default",
        json={"modality": "image", "provider_id": "p", "model_id": "off"},
        headers=ADMIN_HEADERS,
    )

    assert unknown.status_code == 404
    assert duplicate.status_code == 400
    assert inactive_default.status_code == 400


@pytest.mark.unit
def test_admin_model_toggles_affect_generation(api):
    client, harness = api
    a = harness.add_model("p", "a", 1)
    harness.add_model("p", "b", 1)
    harness.chain(Tier.CREATOR, a)
    harness.open_account(balance=10)

    deactivated = client.put(
        "/v1/admin/models/active",
        json={"provider_id": "p", "model_id": "a", "is_active": False},
        headers=ADMIN_HEADERS,
    )
    defaulted = client.put(
        "/v1/admin/models/default",
        json={"modality": "image", "provider_id": "p", "model_id": "b"},
        headers=ADMIN_HEADERS,
    )
    generated = client.post("/v1/generate", json=_generate_body(), headers=HEADERS)

    assert deactivated.json() == {"ok": True, "changed": 1}
    assert defaulted.status_code == 200
    assert generated.json()["model"] == "b"
