"""
token_codec.py — signed session token issue/verify.

Tokens are HS256 JWTs (PyJWT) carrying SessionClaims in camelCase:

    sessionId, userId, email, role, sessionType, isPlatformLaunched,
    permissions, iat, exp   (iat/exp as integer epoch seconds)

Expiry is an absolute instant baked in at issuance. verify() compares it to
the injected clock and nothing else: PyJWT's own exp/iat/nbf checks are
switched off so there is exactly one notion of "now" (ours), and a token whose
exp equals now is already expired.

Older tokens are upgraded by _migrate_claims() before validation. That is the
only place a missing claim gets a default.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import jwt
from pydantic import ValidationError

from simportal.auth.schemas import Permissions, Role, SessionClaims, SessionType
from simportal.clock import Clock, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Verification errors
# ---------------------------------------------------------------------------

class VerificationErrorKind(str, Enum):
    malformed = "malformed"
    signature_mismatch = "signature_mismatch"
    expired = "expired"


class VerificationError(Exception):
    def __init__(self, kind: VerificationErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


# ---------------------------------------------------------------------------
# Claims migration: defaults for claims added after first deployment
# ---------------------------------------------------------------------------

_LEGACY_ROLES = {
    "student": Role.learner.value,
    "teacher": Role.instructor.value,
    "admin": Role.administrator.value,
}

_LEGACY_SESSION_TYPES = {
    "lti": SessionType.platform.value,
    "student": SessionType.platform.value,
    "teacher": SessionType.staff.value,
    "admin": SessionType.staff.value,
    "pureweb": SessionType.synthetic.value,
    "demo": SessionType.synthetic.value,
}


def _derive_session_type(role: str, is_platform_launched: bool) -> str:
    if not is_platform_launched:
        return SessionType.synthetic.value
    if role == Role.learner.value:
        return SessionType.platform.value
    return SessionType.staff.value


def _migrate_claims(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map a decoded payload (any token generation) onto SessionClaims fields.

    Per-field rules:
      isPlatformLaunched  absent → True. The old name isLti is honoured.
                          A missing flag must never turn a platform session
                          into a non-persisting one.
      role                student/teacher/admin → learner/instructor/administrator
      sessionType         legacy names mapped; absent → derived from role and
                          isPlatformLaunched
      permissions         absent → role default
    """
    role = payload.get("role")
    if isinstance(role, str):
        role = _LEGACY_ROLES.get(role, role)

    is_platform_launched = payload.get("isPlatformLaunched")
    if is_platform_launched is None:
        is_platform_launched = payload.get("isLti", True)

    session_type = payload.get("sessionType")
    if isinstance(session_type, str):
        session_type = _LEGACY_SESSION_TYPES.get(session_type, session_type)
    elif session_type is None and isinstance(role, str):
        session_type = _derive_session_type(role, bool(is_platform_launched))

    permissions = payload.get("permissions")
    if permissions is None and role in Role._value2member_map_:
        default = Permissions.for_role(Role(role))
        permissions = default.model_dump() if default else None

    return {
        "session_id": payload.get("sessionId"),
        "user_id": payload.get("userId"),
        "email": payload.get("email") or "",
        "role": role,
        "session_type": session_type,
        "is_platform_launched": is_platform_launched,
        "permissions": permissions,
        "issued_at": datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        "expires_at": datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    }


# ---------------------------------------------------------------------------
# TokenCodec
# ---------------------------------------------------------------------------

class TokenCodec:
    """Stateless issue/verify over an injected secret and clock."""

    def __init__(self, secret: str, algorithm: str = "HS256", clock: Clock = utcnow) -> None:
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock

    def issue(self, claims: SessionClaims) -> str:
        payload: Dict[str, Any] = {
            "sessionId": claims.session_id,
            "userId": claims.user_id,
            "email": claims.email,
            "role": claims.role.value,
            "sessionType": claims.session_type.value,
            "isPlatformLaunched": claims.is_platform_launched,
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
        }
        if claims.permissions is not None:
            payload["permissions"] = claims.permissions.model_dump()
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: Optional[str]) -> SessionClaims:
        """Return the claims or raise VerificationError(kind)."""
        if not token or not isinstance(token, str):
            raise VerificationError(VerificationErrorKind.malformed, "empty token")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["exp", "iat"],
                },
            )
        except jwt.InvalidSignatureError as exc:
            raise VerificationError(VerificationErrorKind.signature_mismatch) from exc
        except jwt.InvalidTokenError as exc:
            raise VerificationError(VerificationErrorKind.malformed, str(exc)) from exc

        try:
            claims = SessionClaims.model_validate(_migrate_claims(payload))
        except (ValidationError, KeyError, TypeError, ValueError, OverflowError) as exc:
            raise VerificationError(VerificationErrorKind.malformed, "invalid claims") from exc

        if self._clock() >= claims.expires_at:
            raise VerificationError(VerificationErrorKind.expired)
        return claims
