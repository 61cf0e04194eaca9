"""
session_store.py — Session Store: one Session Record per login event.

Operations:
  create_session(role, provenance, identity_info, request_meta)  → CreatedSession
  validate_session(token)                                        → Identity | None
  validate_claims(claims)                                        → Identity | None
  terminate_session(session_id)                                  → bool
  expire_all_sessions(user_id)                                   → int
  refresh_session(token)                                         → str | None

Store failure policy (each decision is explicit at the call site):
  create_session      audit-row write failure is logged; the token is still issued
  validate_*          lookup failure or missing row → token-only Identity
  terminate_session   failure is logged; logout still succeeds upstream
  expire_all_sessions failure propagates as StoreUnavailable (admin action)
  refresh_session     expiry extension failure is logged; new token still issued

A row that exists but is expired or terminated always rejects the token; the
token-only fallback is only for rows we could not see.
"""
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Optional

from simportal.auth.schemas import (
    CreatedSession,
    Identity,
    IdentityInfo,
    Permissions,
    PlatformContext,
    Provenance,
    RequestMetadata,
    Role,
    SessionClaims,
    SessionStatus,
    SessionType,
)
from simportal.auth.token_codec import TokenCodec, VerificationError
from simportal.clock import Clock, ensure_utc, utcnow
from simportal.models.user_session import UserSessionORM
from simportal.store import KeyedStore

logger = logging.getLogger(__name__)

SESSION_ID_PREFIX = "sess_"


def new_session_id(now_ms: int) -> str:
    return f"{SESSION_ID_PREFIX}{now_ms}_{secrets.token_hex(8)}"


def session_type_for(role: Role, provenance: Provenance) -> SessionType:
    if provenance == Provenance.synthetic:
        return SessionType.synthetic
    if role == Role.learner:
        return SessionType.platform
    return SessionType.staff


class SessionStore:
    def __init__(
        self,
        store: KeyedStore,
        codec: TokenCodec,
        duration_seconds: int = 3600,
        refresh_threshold_seconds: int = 300,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._duration = timedelta(seconds=duration_seconds)
        self._refresh_threshold = timedelta(seconds=refresh_threshold_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create_session(
        self,
        role: Role,
        provenance: Provenance,
        identity_info: IdentityInfo,
        request_meta: Optional[RequestMetadata] = None,
    ) -> CreatedSession:
        # Whole seconds: the token stores epoch seconds and must agree with the row.
        now = self._clock().replace(microsecond=0)
        expires_at = now + self._duration
        session_id = new_session_id(int(now.timestamp() * 1000))
        session_type = session_type_for(role, provenance)
        request_meta = request_meta or RequestMetadata()

        login_count = await self._next_login_count(identity_info.user_id)

        claims = SessionClaims(
            session_id=session_id,
            user_id=identity_info.user_id,
            email=identity_info.email,
            role=role,
            session_type=session_type,
            is_platform_launched=provenance == Provenance.platform,
            permissions=Permissions.for_role(role),
            issued_at=now,
            expires_at=expires_at,
        )

        context = identity_info.context
        if identity_info.full_name and (context is None or not context.full_name):
            context = (context or PlatformContext()).model_copy(
                update={"full_name": identity_info.full_name}
            )

        row = UserSessionORM(
            id=str(uuid.uuid4()),
            session_id=session_id,
            user_id=identity_info.user_id,
            email=identity_info.email,
            role=role.value,
            session_type=session_type.value,
            is_platform_launched=claims.is_platform_launched,
            platform_context=context.model_dump(exclude_none=True) if context else None,
            status=SessionStatus.active.value,
            login_count=login_count,
            ip_address=request_meta.ip_address,
            user_agent=(request_meta.user_agent or "")[:512] or None,
            created_at=now,
            expires_at=expires_at,
            last_activity_at=now,
        )
        result = await self._store.insert(row)
        if not result.ok:
            logger.warning(
                "Session record not persisted session_id=%s user_id=%s; token remains usable",
                session_id, identity_info.user_id,
            )

        token = self._codec.issue(claims)
        logger.info(
            "Session created session_id=%s user_id=%s role=%s type=%s login_count=%d",
            session_id, identity_info.user_id, role.value, session_type.value, login_count,
        )
        return CreatedSession(session_id=session_id, token=token, expires_at=expires_at)

    async def _next_login_count(self, user_id: str) -> int:
        result = await self._store.find_one(
            UserSessionORM,
            UserSessionORM.user_id == user_id,
            UserSessionORM.status == SessionStatus.active.value,
            order_by=[UserSessionORM.created_at.desc()],
        )
        if not result.ok or result.value is None:
            return 1
        return (result.value.login_count or 0) + 1

    # ------------------------------------------------------------------
    # validate
    # ------------------------------------------------------------------

    async def validate_session(self, token: Optional[str]) -> Optional[Identity]:
        try:
            claims = self._codec.verify(token)
        except VerificationError as exc:
            logger.info("Session token rejected kind=%s", exc.kind.value)
            return None
        return await self.validate_claims(claims)

    async def validate_claims(self, claims: SessionClaims) -> Optional[Identity]:
        """Reconcile verified claims with the Session Record."""
        found = await self._store.find_one(
            UserSessionORM, UserSessionORM.session_id == claims.session_id
        )
        if not found.ok:
            logger.warning(
                "Session lookup unavailable session_id=%s; using token claims only",
                claims.session_id,
            )
            return Identity.from_claims(claims, token_only=True)

        row = found.value
        if row is None:
            return Identity.from_claims(claims, token_only=True)

        if row.status != SessionStatus.active.value:
            logger.info("Session rejected session_id=%s status=%s", claims.session_id, row.status)
            return None

        now = self._clock()
        expires_at = ensure_utc(row.expires_at)
        if now >= expires_at:
            await self._transition(claims.session_id, SessionStatus.expired)
            logger.info("Session expired session_id=%s", claims.session_id)
            return None

        touched = await self._store.update_where(
            UserSessionORM,
            [
                UserSessionORM.session_id == claims.session_id,
                UserSessionORM.status == SessionStatus.active.value,
            ],
            {"last_activity_at": now},
        )
        if not touched.ok:
            logger.warning("last_activity_at not updated session_id=%s", claims.session_id)

        return Identity.from_claims(
            claims,
            expires_at=expires_at,
            created_at=ensure_utc(row.created_at),
            last_activity_at=now,
            login_count=row.login_count,
            context=PlatformContext(**row.platform_context) if row.platform_context else None,
        )

    # ------------------------------------------------------------------
    # status transitions
    # ------------------------------------------------------------------

    async def _transition(self, session_id: str, status: SessionStatus) -> bool:
        result = await self._store.update_where(
            UserSessionORM,
            [
                UserSessionORM.session_id == session_id,
                UserSessionORM.status == SessionStatus.active.value,
            ],
            {"status": status.value},
        )
        if not result.ok:
            logger.warning("Session %s transition failed session_id=%s", status.value, session_id)
            return False
        return result.value > 0

    async def terminate_session(self, session_id: str) -> bool:
        """Mark an active session terminated. False if nothing changed."""
        changed = await self._transition(session_id, SessionStatus.terminated)
        if changed:
            logger.info("Session terminated session_id=%s", session_id)
        return changed

    async def expire_all_sessions(self, user_id: str) -> int:
        """Expire every active session for user_id. Raises StoreUnavailable on store failure."""
        result = await self._store.update_where(
            UserSessionORM,
            [
                UserSessionORM.user_id == user_id,
                UserSessionORM.status == SessionStatus.active.value,
            ],
            {"status": SessionStatus.expired.value},
        )
        count = result.unwrap()
        logger.info("Expired %d session(s) user_id=%s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # refresh
    # ------------------------------------------------------------------

    async def refresh_session(self, token: Optional[str]) -> Optional[str]:
        """
        Same token back while more than the refresh threshold remains; otherwise
        extend the record and re-issue with identical claims. None if invalid.
        """
        identity = await self.validate_session(token)
        if identity is None:
            return None

        now = self._clock()
        if identity.expires_at - now > self._refresh_threshold:
            return token

        now = now.replace(microsecond=0)
        new_expires_at = now + self._duration
        extended = await self._store.update_where(
            UserSessionORM,
            [
                UserSessionORM.session_id == identity.session_id,
                UserSessionORM.status == SessionStatus.active.value,
            ],
            {"expires_at": new_expires_at, "last_activity_at": now},
        )
        if not extended.ok:
            logger.warning("Session expiry not extended session_id=%s", identity.session_id)

        claims = identity.claims().model_copy(
            update={"issued_at": now, "expires_at": new_expires_at}
        )
        logger.info("Session refreshed session_id=%s", identity.session_id)
        return self._codec.issue(claims)
