from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Placeholder user id for events recorded before the requesting user is resolved.
UNKNOWN_USER_ID = "00000000-0000-0000-0000-000000000000"

ElevatedAccessEventType = Literal[
    "ELEVATION_REQUESTED",
    "ELEVATION_GRANTED",
    "ELEVATION_DENIED",
    "ELEVATION_RATE_LIMITED",
    "ELEVATION_USED",
    "ELEVATION_EXPIRED",
]
ElevatedAccessResult = Literal[
    "SUCCESS",
    "FAILED_CREDENTIALS",
    "FAILED_PERMISSION",
    "FAILED_RATE_LIMIT",
    "FAILED_TOKEN_USED",
    "FAILED_TOKEN_EXPIRED",
]

EVENT_REQUESTED: ElevatedAccessEventType = "ELEVATION_REQUESTED"
EVENT_GRANTED: ElevatedAccessEventType = "ELEVATION_GRANTED"
EVENT_DENIED: ElevatedAccessEventType = "ELEVATION_DENIED"
EVENT_RATE_LIMITED: ElevatedAccessEventType = "ELEVATION_RATE_LIMITED"
EVENT_USED: ElevatedAccessEventType = "ELEVATION_USED"
EVENT_EXPIRED: ElevatedAccessEventType = "ELEVATION_EXPIRED"

RESULT_SUCCESS: ElevatedAccessResult = "SUCCESS"
RESULT_FAILED_CREDENTIALS: ElevatedAccessResult = "FAILED_CREDENTIALS"
RESULT_FAILED_PERMISSION: ElevatedAccessResult = "FAILED_PERMISSION"
RESULT_FAILED_RATE_LIMIT: ElevatedAccessResult = "FAILED_RATE_LIMIT"
RESULT_FAILED_TOKEN_USED: ElevatedAccessResult = "FAILED_TOKEN_USED"
RESULT_FAILED_TOKEN_EXPIRED: ElevatedAccessResult = "FAILED_TOKEN_EXPIRED"

# Sequence number reserved for the grant record of a logical token.
GRANT_SEQUENCE = 0

# JSON columns use JSONB on Postgres and plain JSON elsewhere (SQLite tests).
_JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
_BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Store(Base):
    __tablename__ = "stores"

    store_id: Mapped[str] = mapped_column(String, primary_key=True)
    # Owning tenant; the authoritative source behind the permission cache.
    company_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    # bcrypt hash; plaintext credentials are never stored.
    password_hash: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Authorization snapshot copied into elevation tokens at issuance.
    roles: Mapped[list[str]] = mapped_column(_JSONType, default=list)
    permissions: Mapped[list[str]] = mapped_column(_JSONType, default=list)
    company_ids: Mapped[list[str]] = mapped_column(_JSONType, default=list)
    store_ids: Mapped[list[str]] = mapped_column(_JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ElevatedAccessAudit(Base):
    __tablename__ = "elevated_access_audit"
    __table_args__ = (
        # One row per (logical token, event sequence); sequence 0 is the grant.
        UniqueConstraint("token_jti", "token_sequence", name="uq_elevated_access_token_seq"),
        Index("ix_elevated_access_ip_created", "ip_address", "created_at"),
        Index("ix_elevated_access_email_created", "user_email", "created_at"),
        Index("ix_elevated_access_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(_BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String)
    user_email: Mapped[str] = mapped_column(String)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    result: Mapped[str] = mapped_column(String)
    requested_permission: Mapped[str] = mapped_column(String)
    store_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    token_jti: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    token_sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    token_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set once on the grant record when the token is first redeemed.
    token_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ip_address: Mapped[str] = mapped_column(String)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_window: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    @property
    def token_ref(self) -> str | None:
        # Render the legacy tagged reference (used-/replay-/expired-) for reports.
        if self.token_jti is None:
            return None
        if self.event_type == EVENT_USED:
            prefix = "used" if self.result == RESULT_SUCCESS else "replay"
            return f"{prefix}-{self.token_jti}"
        if self.event_type == EVENT_EXPIRED:
            return f"expired-{self.token_jti}"
        return self.token_jti

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "session_id": self.session_id,
            "event_type": self.event_type,
            "result": self.result,
            "requested_permission": self.requested_permission,
            "store_id": self.store_id,
            "token_jti": self.token_jti,
            "token_sequence": self.token_sequence,
            "token_ref": self.token_ref,
            "token_issued_at": _iso(self.token_issued_at),
            "token_expires_at": _iso(self.token_expires_at),
            "token_used_at": _iso(self.token_used_at),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "request_id": self.request_id,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "attempt_count": self.attempt_count,
            "rate_limit_window": _iso(self.rate_limit_window),
            "created_at": _iso(self.created_at),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
