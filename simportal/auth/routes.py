"""
Auth HTTP routes — POST /api/auth/lti,        GET /api/auth/lti,
                   POST /api/auth/login,      GET /api/auth/session,
                   POST /api/auth/refresh,    POST|GET /api/auth/logout,
                   POST /api/auth/users/{user_id}/expire-sessions

The session token travels only in an HTTP-only cookie. Response bodies never
echo it back.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from simportal.auth.demo_users import DemoDirectory
from simportal.auth.identity import IdentityResolver, require_identity, require_role
from simportal.auth.lti import (
    LAUNCH_PATH,
    REQUIRED_OAUTH_PARAMS,
    LtiValidator,
    launch_identity,
    launch_url,
)
from simportal.auth.schemas import (
    Identity,
    IdentityInfo,
    LoginRequest,
    PlatformContext,
    Provenance,
    RequestMetadata,
    Role,
)
from simportal.auth.session_store import SessionStore
from simportal.config import Settings
from simportal.errors import Forbidden, InvalidCredential, LoginFailed, NoCredential

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)

LANDING_PAGES: Dict[Role, str] = {
    Role.learner: "/training",
    Role.instructor: "/dashboard/instructor",
    Role.administrator: "/dashboard/admin",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _request_meta(request: Request) -> RequestMetadata:
    forwarded = request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() or (request.client.host if request.client else None)
    return RequestMetadata(ip_address=ip, user_agent=request.headers.get("user-agent"))


def _config(request: Request) -> Settings:
    return request.app.state.settings


def _set_session_cookie(request: Request, response, token: str) -> None:
    config = _config(request)
    response.set_cookie(
        key=config.session_cookie_name,
        value=token,
        max_age=config.session_duration_seconds,
        httponly=True,
        secure=config.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(request: Request, response) -> None:
    config = _config(request)
    response.delete_cookie(
        key=config.session_cookie_name,
        path="/",
        httponly=True,
        secure=config.cookie_secure,
        samesite="lax",
    )


def _identity_payload(identity: Identity) -> dict:
    payload = identity.model_dump(mode="json", exclude={"token_only"})
    payload["provenance"] = identity.provenance.value
    payload["landing_page"] = LANDING_PAGES[identity.role]
    return payload


# ---------------------------------------------------------------------------
# LTI launch
# ---------------------------------------------------------------------------

@router.post("/lti")
async def lti_launch(request: Request) -> RedirectResponse:
    """
    LTI 1.0 launch from the learning platform.

    Accepts application/x-www-form-urlencoded (what platforms send) or JSON.
    Returns:
      303: redirect to the role landing page, session cookie set
      401: LAUNCH_REJECTED with the validation reason
    """
    if request.headers.get("content-type", "").startswith("application/json"):
        raw = await request.json()
    else:
        raw = await request.form()
    params = {str(k): str(v) for k, v in raw.items()}

    logger.info(
        "LTI launch received consumer=%s user_id=%s context_id=%s",
        params.get("oauth_consumer_key"), params.get("user_id"), params.get("context_id"),
    )

    validator: LtiValidator = request.app.state.lti_validator
    await validator.validate("POST", launch_url(request), params, request.app.state.redis)

    role, info = launch_identity(params)
    session_store: SessionStore = request.app.state.session_store
    created = await session_store.create_session(
        role, Provenance.platform, info, _request_meta(request)
    )

    response = RedirectResponse(url=LANDING_PAGES[role], status_code=303)
    _set_session_cookie(request, response, created.token)
    return response


@router.get("/lti")
async def lti_tool_configuration() -> dict:
    """Tool descriptor for platform administrators configuring the integration."""
    return {
        "tool_name": "Simulation Training Portal",
        "tool_description": "Remote 3D simulation training with phase-based progress tracking",
        "launch_url": LAUNCH_PATH,
        "supported_lti_version": "LTI-1.0",
        "oauth_signature_method": "HMAC-SHA1",
        "required_params": list(REQUIRED_OAUTH_PARAMS)
        + ["lti_message_type", "lti_version", "resource_link_id"],
        "optional_params": [
            "user_id",
            "roles",
            "context_id",
            "context_title",
            "lis_person_name_full",
            "lis_person_contact_email_primary",
            "launch_presentation_return_url",
        ],
    }


# ---------------------------------------------------------------------------
# Stand-alone login
# ---------------------------------------------------------------------------

@router.post("/login")
async def demo_login(body: LoginRequest, request: Request) -> JSONResponse:
    """
    Email/password login against the demo directory.
    Always mints a synthetic session — training writes are never persisted.
    """
    if not _config(request).demo_login_enabled:
        raise Forbidden("Stand-alone login is disabled. Launch the simulator from your course.")

    directory: DemoDirectory = request.app.state.demo_directory
    user = directory.authenticate(body.email, body.password)
    if user is None:
        logger.info("Demo login failed")
        raise LoginFailed()

    info = IdentityInfo(
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        context=PlatformContext(institution=user.institution, full_name=user.full_name),
    )
    session_store: SessionStore = request.app.state.session_store
    created = await session_store.create_session(
        user.role, Provenance.synthetic, info, _request_meta(request)
    )

    response = JSONResponse(
        status_code=200,
        content={
            "success": True,
            "user": {
                "id": user.id,
                "email": user.email,
                "name": user.full_name,
                "role": user.role.value,
                "is_platform_launched": False,
            },
            "redirect_to": LANDING_PAGES[user.role],
        },
    )
    _set_session_cookie(request, response, created.token)
    return response


# ---------------------------------------------------------------------------
# Current session / refresh / logout
# ---------------------------------------------------------------------------

@router.get("/session")
async def current_session(identity: Identity = Depends(require_identity)) -> dict:
    return {"success": True, "identity": _identity_payload(identity)}


@router.post("/refresh")
async def refresh(request: Request) -> JSONResponse:
    """Re-issue the cookie only when the session is close to expiry."""
    resolver: IdentityResolver = request.app.state.identity_resolver
    token = resolver.token_from(request)
    if token is None:
        raise NoCredential()

    session_store: SessionStore = request.app.state.session_store
    new_token = await session_store.refresh_session(token)
    if new_token is None:
        raise InvalidCredential()

    refreshed = new_token != token
    response = JSONResponse(status_code=200, content={"success": True, "refreshed": refreshed})
    if refreshed:
        _set_session_cookie(request, response, new_token)
    return response


@router.api_route("/logout", methods=["POST", "GET"])
async def logout(request: Request) -> JSONResponse:
    """
    Always succeeds. The record is terminated when the token still verifies;
    the cookie is cleared either way.
    """
    resolver: IdentityResolver = request.app.state.identity_resolver
    claims = resolver.resolve(request)
    if claims is not None:
        session_store: SessionStore = request.app.state.session_store
        await session_store.terminate_session(claims.session_id)

    response = JSONResponse(status_code=200, content={"success": True})
    _clear_session_cookie(request, response)
    return response


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

@router.post("/users/{user_id}/expire-sessions")
async def expire_user_sessions(
    user_id: str,
    request: Request,
    identity: Identity = Depends(require_role(Role.administrator)),
) -> dict:
    session_store: SessionStore = request.app.state.session_store
    expired = await session_store.expire_all_sessions(user_id)
    logger.info(
        "Admin expired sessions admin_session_id=%s user_id=%s count=%d",
        identity.session_id, user_id, expired,
    )
    return {"success": True, "expired": expired}
