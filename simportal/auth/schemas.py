"""
schemas.py — auth Pydantic v2 data contracts.

Defines:
  - Role, SessionType, Provenance, SessionStatus  (str enums)
  - Permissions          (role-scoped capability flags carried in the token)
  - SessionClaims        (typed, verified token content — the only form claims take past the codec)
  - PlatformContext      (LTI launch context persisted on the Session Record)
  - Identity             (SessionClaims merged with the Session Record, or token-only)
  - IdentityInfo, RequestMetadata, CreatedSession  (Session Store inputs/outputs)
  - LoginRequest         (stand-alone login body)
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, Enum):
    learner = "learner"
    instructor = "instructor"
    administrator = "administrator"


class SessionType(str, Enum):
    platform = "platform"      # launched from the learning platform
    staff = "staff"            # instructor / administrator session
    synthetic = "synthetic"    # stand-alone / demo login


class Provenance(str, Enum):
    platform = "platform"
    synthetic = "synthetic"


class SessionStatus(str, Enum):
    active = "active"
    expired = "expired"
    terminated = "terminated"


STAFF_ROLES = frozenset({Role.instructor, Role.administrator})


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

class Permissions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    can_edit_questionnaires: bool = False
    can_view_results: bool = False
    can_manage_users: bool = False
    can_view_analytics: bool = False

    @classmethod
    def for_role(cls, role: Role) -> Optional["Permissions"]:
        """Default capability set per role. Learners carry none."""
        if role == Role.administrator:
            return cls(
                can_edit_questionnaires=True,
                can_view_results=True,
                can_manage_users=True,
                can_view_analytics=True,
            )
        if role == Role.instructor:
            return cls(can_edit_questionnaires=True, can_view_results=True)
        return None


# ---------------------------------------------------------------------------
# SessionClaims: what the token carries
# ---------------------------------------------------------------------------

class SessionClaims(BaseModel):
    """
    Verified token content.

    role and session_type are fixed at issuance. A holder who wants different
    claims needs a new token from TokenCodec.issue(); nothing patches these.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    session_id: str
    user_id: str
    email: str = ""
    role: Role
    session_type: SessionType
    is_platform_launched: bool = True
    permissions: Optional[Permissions] = None
    issued_at: datetime
    expires_at: datetime

    @property
    def provenance(self) -> Provenance:
        if self.session_type == SessionType.synthetic or not self.is_platform_launched:
            return Provenance.synthetic
        return Provenance.platform


# ---------------------------------------------------------------------------
# Identity: what downstream code sees
# ---------------------------------------------------------------------------

class PlatformContext(BaseModel):
    model_config = ConfigDict(extra="ignore")

    course_id: Optional[str] = None
    course_name: Optional[str] = None
    resource_id: Optional[str] = None
    institution: Optional[str] = None
    return_url: Optional[str] = None
    full_name: Optional[str] = None


class Identity(SessionClaims):
    """
    Claims merged with the persisted Session Record.

    token_only=True means the record could not be read (missing row or store
    unavailable) and timestamps come from the token; server-side revocation
    was not checked for this call.
    """
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    login_count: int = 1
    context: Optional[PlatformContext] = None
    token_only: bool = False

    @classmethod
    def from_claims(cls, claims: SessionClaims, **overrides) -> "Identity":
        data = claims.model_dump()
        data.update(overrides)
        return cls(**data)

    def claims(self) -> SessionClaims:
        return SessionClaims(**self.model_dump(include=set(SessionClaims.model_fields)))


# ---------------------------------------------------------------------------
# Session Store inputs / outputs
# ---------------------------------------------------------------------------

class IdentityInfo(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: str = ""
    full_name: Optional[str] = None
    context: Optional[PlatformContext] = None


class RequestMetadata(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class CreatedSession(BaseModel):
    session_id: str
    token: str
    expires_at: datetime


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)
