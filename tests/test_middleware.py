"""Tests for request gating, the entitlements API, and error rendering."""

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from bookclub.api.app import create_app
from bookclub.config import header_auth_allowed
from bookclub.entitlements.middleware import (
    EnforcementMiddleware,
    SessionAuthenticator,
    compose_middleware,
    permission_dependency,
    with_club_admin,
    with_club_member,
    with_store_admin,
)
from bookclub.entitlements.service import EntitlementService
from bookclub.entitlements.tracking import ActivityTracker
from bookclub.platform.errors import AppError, error_response

SECRET = "test-session-secret-with-enough-length"


@pytest.fixture
def service(store, flags, subscriptions):
    return EntitlementService(store, flags=flags, subscriptions=subscriptions, tracker=ActivityTracker(store))


@pytest.fixture
def authenticator():
    return SessionAuthenticator(secret=SECRET, algorithms=["HS256"], allow_header_fallback=True)


@pytest.fixture
def client(service, authenticator):
    return TestClient(create_app(service, authenticator))


def _as(user_id):
    return {"x-user-id": user_id}


def _bearer(claims, secret=SECRET):
    return {"Authorization": f"Bearer {jwt.encode(claims, secret, algorithm='HS256')}"}


# ============================================================================
# TEST SUITE: AUTHENTICATION
# ============================================================================

class TestAuthentication:
    def test_health_is_open(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_missing_identity_is_401(self, client):
        response = client.get("/api/entitlements/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_header_identity(self, client, seed_user):
        seed_user("u1", "PRIVILEGED")

        response = client.get("/api/entitlements/me", headers=_as("u1"))

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "u1"
        assert "CAN_CREATE_LIMITED_CLUBS" in body["entitlements"]

    def test_session_token(self, client, seed_user):
        seed_user("u1", "PRIVILEGED_PLUS")

        response = client.get("/api/entitlements/me", headers=_bearer({"sub": "u1"}))

        assert response.status_code == 200
        assert "CAN_SEND_DIRECT_MESSAGES" in response.json()["entitlements"]

    def test_bad_token_without_header_fallback(self, service):
        strict = SessionAuthenticator(secret=SECRET, algorithms=["HS256"], allow_header_fallback=False)
        client = TestClient(create_app(service, strict))

        response = client.get(
            "/api/entitlements/me",
            headers={**_bearer({"sub": "u1"}, secret="another-secret-of-sufficient-length"), **_as("u1")},
        )

        assert response.status_code == 401

    def test_headers_ignored_when_session_secret_configured(self, service, seed_user, platform_owner, monkeypatch):
        monkeypatch.setenv("SESSION_JWT_SECRET", SECRET)
        monkeypatch.delenv("ALLOW_HEADER_AUTH", raising=False)
        seed_user("owner")
        platform_owner("owner")
        client = TestClient(create_app(service, SessionAuthenticator()))

        response = client.post("/api/entitlements/u1/invalidate", headers=_as("owner"))

        assert response.status_code == 401

    def test_session_still_accepted_when_headers_disabled(self, service, seed_user, platform_owner, monkeypatch):
        monkeypatch.setenv("SESSION_JWT_SECRET", SECRET)
        monkeypatch.delenv("ALLOW_HEADER_AUTH", raising=False)
        seed_user("owner")
        platform_owner("owner")
        client = TestClient(create_app(service, SessionAuthenticator()))

        response = client.post("/api/entitlements/u1/invalidate", headers=_bearer({"sub": "owner"}))

        assert response.status_code == 200

    def test_headers_accepted_without_session_secret(self, service, seed_user, monkeypatch):
        monkeypatch.delenv("SESSION_JWT_SECRET", raising=False)
        monkeypatch.delenv("ALLOW_HEADER_AUTH", raising=False)
        seed_user("u1")
        client = TestClient(create_app(service, SessionAuthenticator()))

        assert client.get("/api/entitlements/me", headers=_as("u1")).status_code == 200

    @pytest.mark.parametrize("configured,env,expected", [
        (False, None, True),
        (True, None, False),
        (True, "true", True),
        (False, "false", False),
    ])
    def test_header_auth_setting(self, monkeypatch, configured, env, expected):
        if env is None:
            monkeypatch.delenv("ALLOW_HEADER_AUTH", raising=False)
        else:
            monkeypatch.setenv("ALLOW_HEADER_AUTH", env)

        assert header_auth_allowed(session_configured=configured) is expected

    def test_token_without_subject_falls_back_to_headers(self, client):
        response = client.get("/api/entitlements/me", headers={**_bearer({"email": "a@b.c"}), **_as("u2")})
        assert response.json()["user_id"] == "u2"


# ============================================================================
# TEST SUITE: ENTITLEMENTS API
# ============================================================================

class TestEntitlementsApi:
    def test_check_contextual_permission(self, client, store, seed_user):
        seed_user("lead")
        store.seed("book_clubs", {"id": "c1", "store_id": "s1", "lead_user_id": "lead", "deleted_at": None})

        granted = client.get(
            "/api/entitlements/check",
            params={"entitlement": "CAN_MANAGE_CLUB", "context_id": "c1"},
            headers=_as("lead"),
        ).json()
        other = client.get(
            "/api/entitlements/check",
            params={"entitlement": "CAN_MANAGE_CLUB", "context_id": "c2"},
            headers=_as("lead"),
        ).json()

        assert granted["granted"] is True
        assert other["granted"] is False

    def test_limit_denial_carries_upgrade(self, client, seed_user):
        seed_user("u1", "MEMBER")

        response = client.get("/api/entitlements/limits/club_creation", headers=_as("u1"))

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "ENFORCEMENT_FAILED"
        assert error["details"]["upgrade"]["required_tier"] == "PRIVILEGED"
        assert "limits" not in error["details"]

    def test_limit_allowed(self, client, seed_user):
        seed_user("u1", "PRIVILEGED_PLUS")
        response = client.get("/api/entitlements/limits/club_creation", headers=_as("u1"))
        assert response.json() == {"limit_type": "club_creation", "allowed": True}

    def test_unknown_limit_type(self, client, seed_user):
        seed_user("u1")
        response = client.get("/api/entitlements/limits/storage", headers=_as("u1"))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_invalidate_requires_platform_owner(self, client, seed_user):
        seed_user("u1", "PRIVILEGED_PLUS")

        response = client.post("/api/entitlements/u2/invalidate", headers=_as("u1"))

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "PERMISSION_DENIED"
        assert error["details"]["required"] == "CAN_MANAGE_PLATFORM_SETTINGS"

    def test_platform_owner_invalidates(self, client, service, seed_user, platform_owner):
        seed_user("owner")
        seed_user("u2", "MEMBER")
        platform_owner("owner")
        seen = []
        service.cache.add_invalidation_listener(seen.append)

        response = client.post("/api/entitlements/u2/invalidate", headers=_as("owner"))

        assert response.status_code == 200
        assert response.json() == {"user_id": "u2", "invalidated": True}
        assert seen == ["u2"]

    def test_refresh_recalculates(self, client, store, seed_user):
        seed_user("u1", "MEMBER")
        client.get("/api/entitlements/me", headers=_as("u1"))
        store.tables["users"][0]["membership_tier"] = "PRIVILEGED"

        cached = client.get("/api/entitlements/me", headers=_as("u1")).json()
        refreshed = client.get("/api/entitlements/me", params={"refresh": True}, headers=_as("u1")).json()

        assert "CAN_CREATE_LIMITED_CLUBS" not in cached["entitlements"]
        assert "CAN_CREATE_LIMITED_CLUBS" in refreshed["entitlements"]


# ============================================================================
# TEST SUITE: ENFORCEMENT MIDDLEWARE
# ============================================================================

def _gated_app(service, authenticator):
    app = FastAPI()
    app.state.entitlements = service
    app.state.authenticator = authenticator
    app.add_middleware(EnforcementMiddleware, stage=with_club_admin(), prefixes=("/clubs",))

    @app.exception_handler(AppError)
    async def handle_app_error(request, exc):
        return error_response(exc)

    @app.put("/clubs/{club_id}/settings")
    async def update_settings(club_id: str):
        return {"club_id": club_id, "updated": True}

    @app.get("/stores/{store_id}/analytics")
    async def analytics(store_id: str, user=Depends(permission_dependency(with_store_admin()))):
        return {"store_id": store_id, "user_id": user.user_id}

    @app.get("/reading/{club_id}/posts", dependencies=[Depends(permission_dependency(with_club_member()))])
    async def posts(club_id: str):
        return {"club_id": club_id}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


@pytest.fixture
def gated(service, authenticator, store, seed_user):
    seed_user("lead")
    seed_user("stranger")
    store.seed("book_clubs", {"id": "c1", "store_id": "s1", "lead_user_id": "lead", "deleted_at": None})
    return TestClient(_gated_app(service, authenticator), raise_server_exceptions=False)


class TestEnforcementMiddleware:
    def test_club_lead_passes(self, gated):
        response = gated.put("/clubs/c1/settings", headers=_as("lead"))
        assert response.json() == {"club_id": "c1", "updated": True}

    def test_other_user_denied_with_context(self, gated):
        response = gated.put("/clubs/c1/settings", headers=_as("stranger"))

        assert response.status_code == 403
        details = response.json()["error"]["details"]
        assert details == {"required": "CAN_MANAGE_CLUB", "context": {"type": "club", "id": "c1"}}

    def test_unauthenticated_denied(self, gated):
        assert gated.put("/clubs/c1/settings").status_code == 401

    def test_paths_outside_prefix_not_gated(self, gated):
        assert gated.get("/health").status_code == 200

    def test_denial_is_tracked(self, gated, service, monkeypatch):
        calls = []
        monkeypatch.setattr(
            service.tracker, "track_middleware_enforcement", lambda *args, **kwargs: calls.append((args, kwargs))
        )

        gated.put("/clubs/c1/settings", headers=_as("stranger"))

        (user_id, endpoint, method, allowed), kwargs = calls[-1]
        assert (user_id, endpoint, method, allowed) == ("stranger", "/clubs/c1/settings", "PUT", False)
        assert kwargs["required_permission"] == "CAN_MANAGE_CLUB"


class TestRouteDependencies:
    def test_store_manager_sees_own_store(self, gated, store, seed_user):
        seed_user("manager")
        store.seed("store_administrators", {"store_id": "s1", "user_id": "manager", "role": "manager"})

        response = gated.get("/stores/s1/analytics", headers=_as("manager"))

        assert response.json() == {"store_id": "s1", "user_id": "manager"}

    def test_store_manager_of_other_store_denied(self, gated, store, seed_user):
        seed_user("manager")
        store.seed("store_administrators", {"store_id": "s2", "user_id": "manager", "role": "manager"})

        response = gated.get("/stores/s1/analytics", headers=_as("manager"))

        assert response.status_code == 403
        assert response.json()["error"]["details"]["context"] == {"type": "store", "id": "s1"}

    def test_club_member_allowed(self, gated, store):
        store.seed("club_members", {"club_id": "c1", "user_id": "stranger"})
        assert gated.get("/reading/c1/posts", headers=_as("stranger")).status_code == 200

    def test_club_lead_counts_as_member(self, gated):
        assert gated.get("/reading/c1/posts", headers=_as("lead")).status_code == 200

    def test_non_member_denied(self, gated):
        response = gated.get("/reading/c1/posts", headers=_as("stranger"))
        assert response.status_code == 403
        assert response.json()["error"]["details"]["required"] == "CLUB_MEMBERSHIP"


# ============================================================================
# TEST SUITE: COMPOSITION
# ============================================================================

def _request():
    return Request({"type": "http", "method": "GET", "path": "/", "headers": [], "query_string": b""})


class TestComposeMiddleware:
    @pytest.mark.asyncio
    async def test_stages_run_in_order(self):
        calls = []

        def stage(name):
            async def run(request, call_next):
                calls.append(name)
                return await call_next(request)
            return run

        async def endpoint(request):
            calls.append("endpoint")
            return PlainTextResponse("ok")

        response = await compose_middleware(stage("a"), stage("b"))(_request(), endpoint)

        assert response.status_code == 200
        assert calls == ["a", "b", "endpoint"]

    @pytest.mark.asyncio
    async def test_rejection_short_circuits(self):
        calls = []

        async def reject(request, call_next):
            calls.append("reject")
            return PlainTextResponse("no", status_code=403)

        async def never(request, call_next):
            calls.append("never")
            return await call_next(request)

        async def endpoint(request):
            calls.append("endpoint")
            return PlainTextResponse("ok")

        response = await compose_middleware(reject, never)(_request(), endpoint)

        assert response.status_code == 403
        assert calls == ["reject"]


# ============================================================================
# TEST SUITE: ERROR RENDERING
# ============================================================================

class TestErrorHandling:
    def test_unhandled_exception_is_opaque_500(self, service, authenticator):
        app = create_app(service, authenticator)

        @app.get("/boom")
        async def boom():
            raise RuntimeError("secret internals")

        response = TestClient(app, raise_server_exceptions=False).get("/boom", headers={"X-Correlation-ID": "abc"})

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert "secret internals" not in response.text
        assert error["details"] == {"correlation_id": "abc"}

    def test_correlation_id_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "req-1"})
        assert response.headers["X-Correlation-ID"] == "req-1"
