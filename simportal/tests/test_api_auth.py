"""
End-to-end API tests for /api/auth/* and /api/health.

Tests the full stack: HTTP request → identity dependency → Session Store →
SQLite → HTTP response, with the session cookie read from Set-Cookie and sent
back explicitly.
"""
import pytest
from httpx import AsyncClient

from simportal.auth.schemas import IdentityInfo, Provenance, Role
from simportal.config import Settings

from conftest import TEST_SECRET, cookie_header, session_cookie

DEMO_LEARNER = {"email": "learner@demo.simportal.local", "password": "learner-demo"}
DEMO_ADMIN = {"email": "ADMIN@demo.simportal.local", "password": "admin-demo"}


async def _platform_token(app, role: Role = Role.learner, user_id: str = "lms-user-1") -> str:
    created = await app.state.session_store.create_session(
        role,
        Provenance.platform,
        IdentityInfo(user_id=user_id, email=f"{user_id}@example.ac.nz", full_name="Test User"),
    )
    return created.token


# ---------------------------------------------------------------------------
# Stand-alone login
# ---------------------------------------------------------------------------

class TestDemoLogin:
    @pytest.mark.asyncio
    async def test_login_sets_cookie_and_synthetic_session(self, client: AsyncClient):
        response = await client.post("/api/auth/login", json=DEMO_LEARNER)
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["success"] is True
        assert body["redirect_to"] == "/training"
        assert body["user"]["is_platform_launched"] is False
        assert "token" not in response.text

        token = session_cookie(response)
        assert token
        assert "httponly" in response.headers["set-cookie"].lower()

        session = await client.get("/api/auth/session", headers=cookie_header(token))
        assert session.status_code == 200
        identity = session.json()["identity"]
        assert identity["provenance"] == "synthetic"
        assert identity["role"] == "learner"

    @pytest.mark.asyncio
    async def test_admin_email_is_case_insensitive(self, client: AsyncClient):
        response = await client.post("/api/auth/login", json=DEMO_ADMIN)
        assert response.status_code == 200
        assert response.json()["redirect_to"] == "/dashboard/admin"

    @pytest.mark.asyncio
    async def test_wrong_password(self, client: AsyncClient):
        response = await client.post(
            "/api/auth/login", json={"email": DEMO_LEARNER["email"], "password": "nope"}
        )
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INVALID_LOGIN"
        assert session_cookie(response) is None

    @pytest.mark.asyncio
    async def test_missing_fields_is_validation_error(self, client: AsyncClient):
        response = await client.post("/api/auth/login", json={"email": "x@example.com"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Current session
# ---------------------------------------------------------------------------

class TestCurrentSession:
    @pytest.mark.asyncio
    async def test_no_cookie_and_bad_cookie_look_the_same(self, client: AsyncClient):
        missing = await client.get("/api/auth/session")
        corrupt = await client.get("/api/auth/session", headers=cookie_header("corrupt.token.value"))
        assert missing.status_code == corrupt.status_code == 401
        assert missing.json() == corrupt.json()
        assert missing.json()["error"]["message"] == "Please sign in again."

    @pytest.mark.asyncio
    async def test_expired_token_is_unauthenticated(self, client: AsyncClient, app, clock):
        token = await _platform_token(app)
        clock.advance(hours=1)
        response = await client.get("/api/auth/session", headers=cookie_header(token))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"

    @pytest.mark.asyncio
    async def test_platform_learner_identity(self, client: AsyncClient, app):
        token = await _platform_token(app)
        response = await client.get("/api/auth/session", headers=cookie_header(token))
        identity = response.json()["identity"]
        assert identity["provenance"] == "platform"
        assert identity["session_type"] == "platform"
        assert identity["landing_page"] == "/training"
        assert identity["login_count"] == 1


# ---------------------------------------------------------------------------
# Refresh / logout
# ---------------------------------------------------------------------------

class TestRefreshAndLogout:
    @pytest.mark.asyncio
    async def test_refresh_only_near_expiry(self, client: AsyncClient, app, clock):
        token = await _platform_token(app)

        early = await client.post("/api/auth/refresh", headers=cookie_header(token))
        assert early.json() == {"success": True, "refreshed": False}
        assert session_cookie(early) is None

        clock.advance(minutes=57)
        late = await client.post("/api/auth/refresh", headers=cookie_header(token))
        assert late.json()["refreshed"] is True
        new_token = session_cookie(late)
        assert new_token and new_token != token

    @pytest.mark.asyncio
    async def test_refresh_without_cookie(self, client: AsyncClient):
        response = await client.post("/api/auth/refresh")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_logout_revokes_token(self, client: AsyncClient, app):
        token = await _platform_token(app)
        response = await client.post("/api/auth/logout", headers=cookie_header(token))
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert session_cookie(response) == ""

        after = await client.get("/api/auth/session", headers=cookie_header(token))
        assert after.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"Cookie": "session_token=garbage"}])
    async def test_logout_always_succeeds(self, client: AsyncClient, headers):
        response = await client.get("/api/auth/logout", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"success": True}


# ---------------------------------------------------------------------------
# Settings passed to init_services
# ---------------------------------------------------------------------------

def _reconfigure(app, db, clock, **overrides) -> None:
    from simportal.main import init_services

    config = Settings(secret_key=TEST_SECRET, **overrides)
    init_services(app, db[0], db[1], config=config, clock=clock)


class TestInjectedSettings:
    @pytest.mark.asyncio
    async def test_cookie_name_follows_injected_settings(self, client: AsyncClient, app, db, clock):
        _reconfigure(app, db, clock, session_cookie_name="sp_session")

        login = await client.post("/api/auth/login", json=DEMO_LEARNER)
        assert login.status_code == 200
        assert session_cookie(login) is None
        token = session_cookie(login, name="sp_session")
        assert token

        session = await client.get(
            "/api/auth/session", headers=cookie_header(token, name="sp_session")
        )
        assert session.status_code == 200
        assert session.json()["identity"]["provenance"] == "synthetic"

        logout = await client.post(
            "/api/auth/logout", headers=cookie_header(token, name="sp_session")
        )
        assert session_cookie(logout, name="sp_session") == ""

    @pytest.mark.asyncio
    async def test_demo_login_can_be_disabled(self, client: AsyncClient, app, db, clock):
        _reconfigure(app, db, clock, demo_login_enabled=False)
        response = await client.post("/api/auth/login", json=DEMO_LEARNER)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"
        assert session_cookie(response) is None


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

class TestExpireSessions:
    @pytest.mark.asyncio
    async def test_learner_is_forbidden(self, client: AsyncClient, app):
        token = await _platform_token(app)
        response = await client.post(
            "/api/auth/users/lms-user-1/expire-sessions", headers=cookie_header(token)
        )
        assert response.status_code == 403
        body = response.json()
        assert body["error"]["code"] == "FORBIDDEN"
        assert "administrator" in body["error"]["message"]

    @pytest.mark.asyncio
    async def test_admin_expires_target_sessions(self, client: AsyncClient, app):
        learner_token = await _platform_token(app, user_id="lms-user-5")
        admin_token = await _platform_token(app, role=Role.administrator, user_id="lms-admin")

        response = await client.post(
            "/api/auth/users/lms-user-5/expire-sessions", headers=cookie_header(admin_token)
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "expired": 1}

        after = await client.get("/api/auth/session", headers=cookie_header(learner_token))
        assert after.status_code == 401


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["database"] == "ok"
