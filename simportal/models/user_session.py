"""
models/user_session.py — SQLAlchemy ORM model for login sessions.

Table: user_sessions
One row per login event (platform launch or stand-alone login).
Written exclusively by auth/session_store.py; other components only ever see
the Identity built from it.

Lifecycle: active → expired | terminated. Rows are never resurrected.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from simportal.database import Base, JSONType


class UserSessionORM(Base):
    """
    ORM model for a single login session.

    platform_context: course / resource / institution / return URL captured at
                      launch. Null for stand-alone logins.
    role, session_type, is_platform_launched: copied from the token claims at
                      issuance for audit and revocation — never patched afterwards.
    """
    __tablename__ = "user_sessions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    session_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        comment="Opaque session identifier embedded in the token",
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    role: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="'learner', 'instructor' or 'administrator'",
    )
    session_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="'platform', 'staff' or 'synthetic'",
    )
    is_platform_launched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    platform_context: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="active",
        index=True,
        comment="'active', 'expired' or 'terminated'",
    )
    login_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
