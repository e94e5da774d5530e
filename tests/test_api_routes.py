"""HTTP-level tests for the auth, quota, admin and billing routes."""

import pytest
from fastapi.testclient import TestClient

from gallerycore import app as app_module
from gallerycore.service.account_guard import OAuthProfile
from gallerycore.service.runtime import get_runtime

PASSWORD = "TestPassword123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="member@example.com", handle="member"):
    response = client.post(
        "/v1/auth/register",
        json={"email": email, "password": PASSWORD, "handle": handle},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class ProviderCodes:
    """OAuth verifier that accepts only codes registered by the test, each once."""

    def __init__(self):
        self.codes = {}

    def add(self, provider, code, *, provider_id, email, username=None):
        self.codes[(provider, code)] = OAuthProfile(
            provider_id=provider_id, email=email, username=username
        )

    def verify(self, provider, code):
        return self.codes.pop((provider, code), None)


@pytest.fixture
def provider_codes():
    verifier = ProviderCodes()
    get_runtime().auth.oauth_verifier = verifier
    return verifier


@pytest.fixture
def member(client):
    return _register(client)


@pytest.fixture
def admin(client):
    data = _register(client, email="staff@example.com", handle="staffer")
    get_runtime().store.update_user(data["user"]["id"], panel_user_id="panel-1")
    return data


class TestAuthRoutes:
    def test_healthz(self, client):
        response = client.get("/v1/healthz")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "healthy"

    def test_register_returns_envelope(self, client):
        data = _register(client)
        assert data["is_new_user"] is True
        assert data["user"]["handle"] == "member"
        assert data["user"]["has_panel_access"] is False
        assert data["tokens"]["token_type"] == "bearer"

    def test_register_conflict(self, client, member):
        response = client.post(
            "/v1/auth/register",
            json={"email": "member@example.com", "password": PASSWORD, "handle": "other"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_missing_field_is_validation_error(self, client):
        response = client.post("/v1/auth/register", json={"email": "x@example.com"})
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_login_and_me(self, client, member):
        response = client.post(
            "/v1/auth/login", json={"email": "member@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        tokens = response.json()["data"]["tokens"]

        me = client.get("/v1/auth/me", headers=_auth(tokens))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "member@example.com"

    def test_lockout_returns_423_with_retry_after(self, client, member):
        threshold = get_runtime().settings.lockout_threshold
        for _ in range(threshold - 1):
            response = client.post(
                "/v1/auth/login", json={"email": "member@example.com", "password": "wrong-pass-1"}
            )
            assert response.status_code == 401

        response = client.post(
            "/v1/auth/login", json={"email": "member@example.com", "password": "wrong-pass-1"}
        )
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"
        assert int(response.headers["retry-after"]) > 0

    def test_refresh_rotation_and_reuse(self, client, member):
        old = member["tokens"]["refresh_token"]
        response = client.post("/v1/auth/refresh", json={"refresh_token": old})
        assert response.status_code == 200
        assert response.json()["data"]["refresh_token"] != old

        reuse = client.post("/v1/auth/refresh", json={"refresh_token": old})
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "invalid_refresh_token"

    def test_logout_revokes_refresh_token(self, client, member):
        tokens = member["tokens"]
        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": tokens["refresh_token"]},
            headers=_auth(tokens),
        )
        assert response.json()["data"]["revoked"] == 1

        after = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert after.status_code == 401

    def test_oauth_conflict_is_409(self, client, member, provider_codes):
        provider_codes.add("google", "code-g1", provider_id="g-1", email="member@example.com")
        response = client.post(
            "/v1/auth/oauth/callback", json={"provider": "google", "code": "code-g1"}
        )
        assert response.status_code == 409
        assert response.json()["error"]["details"]["provider"] == "google"

    def test_oauth_verified_code_signs_in(self, client, provider_codes):
        provider_codes.add("github", "code-1", provider_id="gh-42", email="owner@example.com")
        response = client.post(
            "/v1/auth/oauth/callback", json={"provider": "github", "code": "code-1"}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_new_user"] is True
        assert data["user"]["email"] == "owner@example.com"
        assert data["user"]["email_verified"] is True

    def test_oauth_client_asserted_identity_is_rejected(self, client, provider_codes):
        provider_codes.add("github", "code-1", provider_id="gh-42", email="owner@example.com")
        owner = client.post("/v1/auth/oauth/callback", json={"provider": "github", "code": "code-1"})
        assert owner.status_code == 200

        claimed = client.post(
            "/v1/auth/oauth/callback",
            json={"provider": "github", "provider_id": "gh-42", "email": "attacker@evil.test"},
        )
        assert claimed.status_code == 400
        assert claimed.json()["error"]["code"] == "validation_error"
        assert "tokens" not in (claimed.json().get("data") or {})

        forged = client.post(
            "/v1/auth/oauth/callback", json={"provider": "github", "code": "made-up"}
        )
        assert forged.status_code == 401
        assert forged.json()["error"]["code"] == "unauthorized"
        assert get_runtime().store.get_user_by_email("attacker@evil.test") is None

    def test_oauth_code_is_single_use(self, client, provider_codes):
        provider_codes.add("google", "code-once", provider_id="g-9", email="once@example.com")
        first = client.post("/v1/auth/oauth/callback", json={"provider": "google", "code": "code-once"})
        again = client.post("/v1/auth/oauth/callback", json={"provider": "google", "code": "code-once"})
        assert first.status_code == 200
        assert again.status_code == 401

    def test_oauth_unconfigured_provider_is_unauthorized(self, client):
        response = client.post(
            "/v1/auth/oauth/callback", json={"provider": "github", "code": "anything"}
        )
        assert response.status_code == 401

    def test_oauth_unknown_provider_is_400(self, client, provider_codes):
        response = client.post(
            "/v1/auth/oauth/callback", json={"provider": "myspace", "code": "anything"}
        )
        assert response.status_code == 400

    def test_forgot_password_does_not_leak_accounts(self, client, member):
        known = client.post("/v1/auth/forgot-password", json={"email": "member@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-abc"})
        assert response.status_code == 401
        assert response.headers["x-request-id"] == "req-abc"
        assert response.json()["request_id"] == "req-abc"


class TestQuotaRoutes:
    def test_requires_authentication(self, client):
        response = client.get("/v1/quota")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_non_ascii_bearer_is_unauthorized(self, client, member):
        header, payload, _sig = member["tokens"]["access_token"].split(".")
        raw = f"Bearer {header}.{payload}.".encode() + b"\xe9"
        response = client.get("/v1/quota", headers={"Authorization": raw})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_status_for_new_member(self, client, member):
        response = client.get("/v1/quota", headers=_auth(member["tokens"]))
        data = response.json()["data"]
        settings = get_runtime().settings
        assert data["tier"] == "free"
        assert data["limit"] == settings.free_tier_limit
        assert data["used"] == 0
        assert data["has_custom_limit"] is False

    def test_check(self, client, member):
        response = client.post(
            "/v1/quota/check", json={"estimated_cost": 500}, headers=_auth(member["tokens"])
        )
        data = response.json()["data"]
        assert data["sufficient"] is True
        assert data["shortfall"] == 0

    def test_negative_estimate_rejected(self, client, member):
        response = client.post(
            "/v1/quota/check", json={"estimated_cost": -1}, headers=_auth(member["tokens"])
        )
        assert response.status_code == 400

    def test_transactions_page(self, client, member):
        quota = get_runtime().quota
        user_id = member["user"]["id"]
        for cost in (100, 200, 300):
            quota.deduct(user_id, cost, analysis_id=f"an-{cost}")

        response = client.get(
            "/v1/quota/transactions?page=1&limit=2", headers=_auth(member["tokens"])
        )
        data = response.json()["data"]
        assert data["total"] == 3
        assert data["has_more"] is True
        assert [item["tokens_amount"] for item in data["items"]] == [-300, -200]
        assert data["items"][0]["type"] == "analysis"

    def test_page_size_capped(self, client, member):
        response = client.get(
            "/v1/quota/transactions?limit=500", headers=_auth(member["tokens"])
        )
        assert response.status_code == 400


class TestAdminRoutes:
    def test_non_admin_forbidden(self, client, member):
        response = client.get("/v1/admin/quota/custom-limits", headers=_auth(member["tokens"]))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_bonus(self, client, admin, member):
        user_id = member["user"]["id"]
        get_runtime().quota.deduct(user_id, 700)

        response = client.post(
            f"/v1/admin/users/{user_id}/quota/bonus",
            json={"amount": 500, "reason": "goodwill"},
            headers=_auth(admin["tokens"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["used"] == 200

        notes = get_runtime().store.list_notifications(user_id)
        assert [n.kind for n in notes] == ["quota_bonus"]

    def test_bonus_must_be_positive(self, client, admin, member):
        response = client.post(
            f"/v1/admin/users/{member['user']['id']}/quota/bonus",
            json={"amount": 0},
            headers=_auth(admin["tokens"]),
        )
        assert response.status_code == 400

    def test_custom_limit_set_list_clear(self, client, admin, member):
        user_id = member["user"]["id"]
        headers = _auth(admin["tokens"])

        put = client.put(
            f"/v1/admin/users/{user_id}/quota/custom-limit",
            json={"limit": 1234, "reason": "beta"},
            headers=headers,
        )
        assert put.json()["data"]["limit"] == 1234

        listed = client.get("/v1/admin/quota/custom-limits", headers=headers).json()["data"]
        assert [(e["user_id"], e["custom_limit"]) for e in listed] == [(user_id, 1234)]

        cleared = client.delete(
            f"/v1/admin/users/{user_id}/quota/custom-limit?reason=done", headers=headers
        )
        assert cleared.json()["data"]["has_custom_limit"] is False

        own = client.get("/v1/quota", headers=_auth(member["tokens"])).json()["data"]
        assert own["limit"] == get_runtime().settings.free_tier_limit

    def test_reset_and_sweep(self, client, admin, member):
        user_id = member["user"]["id"]
        get_runtime().quota.deduct(user_id, 50)
        headers = _auth(admin["tokens"])

        reset = client.post(f"/v1/admin/users/{user_id}/quota/reset", headers=headers)
        assert reset.json()["data"]["used"] == 0

        sweep = client.post("/v1/admin/quota/sweep", headers=headers)
        assert sweep.json()["data"] == {"reset": 0}

    def test_unknown_user_is_404(self, client, admin):
        response = client.get("/v1/admin/users/ghost/quota", headers=_auth(admin["tokens"]))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestBillingRoutes:
    def test_activation_raises_limit(self, client, admin, member):
        user_id = member["user"]["id"]
        response = client.post(
            "/v1/billing/events",
            json={"user_id": user_id, "type": "activated"},
            headers=_auth(admin["tokens"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["tier"] == "pro"

        own = client.get("/v1/quota", headers=_auth(member["tokens"])).json()["data"]
        assert own["limit"] == get_runtime().settings.pro_tier_limit

    def test_unknown_event_type(self, client, admin, member):
        response = client.post(
            "/v1/billing/events",
            json={"user_id": member["user"]["id"], "type": "refunded"},
            headers=_auth(admin["tokens"]),
        )
        assert response.status_code == 400

    def test_extra_fields_rejected(self, client, admin, member):
        response = client.post(
            "/v1/billing/events",
            json={"user_id": member["user"]["id"], "type": "activated", "tier": "enterprise"},
            headers=_auth(admin["tokens"]),
        )
        assert response.status_code == 400

    def test_members_cannot_post_events(self, client, member):
        response = client.post(
            "/v1/billing/events",
            json={"user_id": member["user"]["id"], "type": "activated"},
            headers=_auth(member["tokens"]),
        )
        assert response.status_code == 403


def test_unhandled_error_is_enveloped(member, monkeypatch):
    def explode(user_id):
        raise RuntimeError("database fell over")

    monkeypatch.setattr(get_runtime().quota, "get_status", explode)
    client = TestClient(app_module.app, raise_server_exceptions=False)

    response = client.get("/v1/quota", headers=_auth(member["tokens"]))
    assert response.status_code == 500
    body = response.json()
    assert body["error"]["code"] == "server_error"
    assert "database" not in body["error"]["message"]
