"""HTTP tests for the workflow and tier configuration endpoints.

The sync session, clock and directory are overridden with the SQLite fixtures
from conftest; the caller is swapped per test through ``act_as``.

Tests:
  1. test_health                               — 200 + {status: ok}
  2. test_missing_token_is_401                 — no bearer token
  3. test_invalid_token_is_401                 — garbage bearer token
  4. test_route_and_approve_through_api        — 201 routing, 200 decisions, eligible approvers follow
  5. test_real_token_is_accepted               — JWT from create_access_token authenticates
  6. test_no_tier_matched_is_422               — error body carries the machine-readable code
  7. test_outsider_decision_is_403             — NotEligibleError → 403
  8. test_decision_on_terminal_request_is_409  — InvalidTransitionError → 409
  9. test_submit_on_behalf_requires_admin      — 403 for non-admin requester_id override
 10. test_tier_config_write_requires_admin     — 403 for non-ADMIN, 201 for ADMIN
 11. test_expired_token_is_401                 — exp in the past
 12. test_system_actor_cannot_get_a_token     — "system" is reserved for the scheduler
 13. test_delegation_lifecycle_through_api    — create, effective approver, owner-only revoke, audit
"""
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from approval_routing.core.deps import Actor, get_clock, get_current_actor
from approval_routing.core.security import create_access_token
from approval_routing.db.session import get_sync_session
from approval_routing.main import app
from approval_routing.services.directory import get_directory


# ─── Shared fixtures ──────────────────────────────────────────────────────────

TIERS = [
    {
        "level": 1,
        "thresholds": [{"trigger_type": "amount", "operator": "greater_than", "value": {"kind": "number", "value": 0}}],
        "approvers": [{"type": "manager"}],
    },
    {
        "level": 2,
        "thresholds": [{"trigger_type": "amount", "operator": "greater_than", "value": {"kind": "number", "value": 1000}}],
        "approvers": [{"type": "user", "user_id": "dir"}],
    },
]


@pytest.fixture
def overrides(db, directory, clock):
    def _session_override():
        yield db

    app.dependency_overrides[get_sync_session] = _session_override
    app.dependency_overrides[get_directory] = lambda: directory
    app.dependency_overrides[get_clock] = lambda: clock
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def act_as(overrides):
    def _act_as(user_id: str, role: str = "USER"):
        app.dependency_overrides[get_current_actor] = lambda: Actor(id=user_id, role=role)

    return _act_as


def client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def route_body(amount, **extra) -> dict:
    return {"reference_id": "PR-100", "category": "purchase", "attributes": {"amount": str(amount)}, **extra}


# ─── Tests ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_health():
    async with client() as ac:
        resp = await ac.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_missing_token_is_401(overrides):
    async with client() as ac:
        resp = await ac.get("/api/v1/workflows/stats")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token_is_401(overrides):
    async with client() as ac:
        resp = await ac.get("/api/v1/workflows/stats", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_route_and_approve_through_api(act_as, make_config):
    make_config(TIERS)
    act_as("alice")

    async with client() as ac:
        resp = await ac.post("/api/v1/workflows", json=route_body(5000))
        assert resp.status_code == 201, resp.text
        routed = resp.json()
        assert routed["tiers"] == [1, 2]
        assert routed["status"] == "pending"
        instance_id = routed["id"]

        resp = await ac.get(f"/api/v1/workflows/{instance_id}/eligible-approvers")
        assert [e["user_id"] for e in resp.json()] == ["mgr"]

        act_as("mgr")
        resp = await ac.post(
            f"/api/v1/workflows/{instance_id}/decisions",
            json={"step_id": routed["current_step_id"], "action": "approve"},
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["status"] == "in_progress"
        assert body["current_step_order"] == 2

        resp = await ac.get(f"/api/v1/workflows/{instance_id}/eligible-approvers")
        assert [e["user_id"] for e in resp.json()] == ["dir"]


@pytest.mark.asyncio
async def test_real_token_is_accepted(overrides, make_config):
    make_config(TIERS)
    token = create_access_token("alice", "USER")

    async with client() as ac:
        resp = await ac.post(
            "/api/v1/workflows",
            json=route_body(Decimal("250")),
            headers={"Authorization": f"Bearer {token}"},
        )
    assert resp.status_code == 201, resp.text
    assert resp.json()["tiers"] == [1]


@pytest.mark.asyncio
async def test_no_tier_matched_is_422(act_as):
    act_as("alice")
    async with client() as ac:
        resp = await ac.post("/api/v1/workflows", json=route_body(50))
    assert resp.status_code == 422
    assert resp.json()["code"] == "NO_TIER_MATCHED"


@pytest.mark.asyncio
async def test_outsider_decision_is_403(act_as, make_config):
    make_config(TIERS)
    act_as("alice")
    async with client() as ac:
        routed = (await ac.post("/api/v1/workflows", json=route_body(50))).json()

        act_as("carol")
        resp = await ac.post(
            f"/api/v1/workflows/{routed['id']}/decisions",
            json={"step_id": routed["current_step_id"], "action": "approve"},
        )
    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_ELIGIBLE"


@pytest.mark.asyncio
async def test_decision_on_terminal_request_is_409(act_as, make_config):
    make_config(TIERS)
    act_as("alice")
    async with client() as ac:
        routed = (await ac.post("/api/v1/workflows", json=route_body(50))).json()

        act_as("mgr")
        resp = await ac.post(
            f"/api/v1/workflows/{routed['id']}/decisions",
            json={"step_id": routed["current_step_id"], "action": "reject", "reason": "Not budgeted"},
        )
        assert resp.json()["status"] == "rejected"

        resp = await ac.post(
            f"/api/v1/workflows/{routed['id']}/decisions",
            json={"step_id": routed["current_step_id"], "action": "approve"},
        )
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_submit_on_behalf_requires_admin(act_as, make_config):
    make_config(TIERS)
    act_as("bob")
    async with client() as ac:
        resp = await ac.post("/api/v1/workflows", json=route_body(50, requester_id="alice"))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_tier_config_write_requires_admin(act_as):
    body = {"name": "Purchases", "category": "purchase", "is_default": True, "tiers": TIERS}

    act_as("alice")
    async with client() as ac:
        resp = await ac.post("/api/v1/tier-configurations", json=body)
        assert resp.status_code == 403

        act_as("root", role="ADMIN")
        resp = await ac.post("/api/v1/tier-configurations", json=body)
    assert resp.status_code == 201, resp.text
    created = resp.json()
    assert created["version"] == 1
    assert created["is_default"] is True
    assert [t["level"] for t in created["tiers"]] == [1, 2]


@pytest.mark.asyncio
async def test_expired_token_is_401(overrides):
    token = create_access_token("alice", "USER", expires_minutes=-1)

    async with client() as ac:
        resp = await ac.get("/api/v1/workflows/stats", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_system_actor_cannot_get_a_token():
    with pytest.raises(ValueError):
        create_access_token("system", "ADMIN")


@pytest.mark.asyncio
async def test_delegation_lifecycle_through_api(act_as, clock):
    act_as("mgr")
    async with client() as ac:
        resp = await ac.post(
            "/api/v1/delegations",
            json={"to_user_id": "bob", "start_date": "2024-01-01", "end_date": "2024-01-31", "reason": "Leave"},
        )
        assert resp.status_code == 201, resp.text
        delegation = resp.json()["delegation"]
        assert delegation["from_user_id"] == "mgr"
        assert delegation["status"] == "active"

        resp = await ac.get(
            "/api/v1/delegations/effective",
            params={"user_id": "mgr", "category": "purchase", "requester_id": "alice", "amount": "100"},
        )
        assert resp.json()["effective_id"] == "bob"
        assert resp.json()["delegation_id"] == delegation["id"]

        act_as("carol")
        resp = await ac.post(f"/api/v1/delegations/{delegation['id']}/revoke", json={"reason": "Not mine"})
        assert resp.status_code == 403

        clock.advance(hours=1)
        act_as("mgr")
        resp = await ac.post(f"/api/v1/delegations/{delegation['id']}/revoke", json={"reason": "Back early"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "revoked"

        resp = await ac.get(f"/api/v1/delegations/{delegation['id']}/audit")
    assert [e["action"] for e in resp.json()] == ["created", "revoked"]
