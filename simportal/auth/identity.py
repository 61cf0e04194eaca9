"""
identity.py — Request Identity Resolver and the FastAPI dependencies built on it.

resolve(request) never raises. An absent cookie and a corrupt, forged or
expired token all come back as None, and only the failure kind is logged.

Route code uses the dependencies instead:
    identity: Identity = Depends(require_identity)
which also reconciles the claims with the Session Record (revocation, expiry,
last-activity touch) through SessionStore.validate_claims(). require_claims
stops at the verified token and does no store I/O.
"""
import logging
from typing import Callable, Optional

from fastapi import Depends, Request

from simportal.auth.schemas import Identity, Role, SessionClaims
from simportal.auth.token_codec import TokenCodec, VerificationError
from simportal.errors import Forbidden, InvalidCredential, NoCredential

logger = logging.getLogger(__name__)


class IdentityResolver:
    def __init__(self, codec: TokenCodec, cookie_name: str = "session_token") -> None:
        self._codec = codec
        self.cookie_name = cookie_name

    def token_from(self, request: Request) -> Optional[str]:
        return request.cookies.get(self.cookie_name) or None

    def resolve(self, request: Request) -> Optional[SessionClaims]:
        token = self.token_from(request)
        if token is None:
            return None
        try:
            return self._codec.verify(token)
        except VerificationError as exc:
            logger.info("Session token rejected kind=%s path=%s", exc.kind.value, request.url.path)
            return None


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

async def require_claims(request: Request) -> SessionClaims:
    """Verified token claims or a 401, without reading the Session Record."""
    resolver: IdentityResolver = request.app.state.identity_resolver
    if resolver.token_from(request) is None:
        raise NoCredential()
    claims = resolver.resolve(request)
    if claims is None:
        raise InvalidCredential()
    return claims


async def optional_identity(request: Request) -> Optional[Identity]:
    """Identity for the caller, or None. Never raises for credential problems."""
    resolver: IdentityResolver = request.app.state.identity_resolver
    claims = resolver.resolve(request)
    if claims is None:
        return None
    return await request.app.state.session_store.validate_claims(claims)


async def require_identity(request: Request) -> Identity:
    """
    Identity for the caller or a 401.

    NoCredential and InvalidCredential render identically; the distinction
    only exists in the server log.
    """
    resolver: IdentityResolver = request.app.state.identity_resolver
    if resolver.token_from(request) is None:
        raise NoCredential()
    identity = await optional_identity(request)
    if identity is None:
        raise InvalidCredential()
    return identity


def require_role(*roles: Role) -> Callable:
    """Dependency factory: 403 unless the caller holds one of `roles`."""
    allowed = frozenset(roles)
    names = " or ".join(r.value for r in roles)

    async def _dependency(identity: Identity = Depends(require_identity)) -> Identity:
        if identity.role not in allowed:
            logger.info(
                "Forbidden session_id=%s role=%s required=%s",
                identity.session_id, identity.role.value, names,
            )
            raise Forbidden(f"This action requires the {names} role.")
        return identity

    return _dependency
