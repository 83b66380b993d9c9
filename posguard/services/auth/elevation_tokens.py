from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable, Literal
from uuid import uuid4

import jwt

from posguard.core.config import (
    ELEVATION_TOKEN_DEFAULT_SECONDS,
    ELEVATION_TOKEN_MAX_SECONDS,
    ELEVATION_TOKEN_MIN_SECONDS,
    Settings,
    get_settings,
)
from posguard.core.errors import ConfigurationError
from posguard.services.auth.elevated_access_audit import ElevatedAccessAuditService


logger = logging.getLogger(__name__)

# Discriminator that keeps elevation tokens from being mistaken for session tokens.
ELEVATION_TOKEN_TYPE = "elevation"
ELEVATION_TOKEN_ALGORITHM = "HS256"

TokenErrorCode = Literal["INVALID", "EXPIRED", "SCOPE_MISMATCH"]


@dataclass(frozen=True)
class ElevationTokenPayload:
    """Claim set signed into an elevation token.

    The roles/permissions/company_ids/store_ids fields are a snapshot of the
    user's authorization at issuance. Downstream checks treat them as the
    bearer's identity until ``exp``, so they can briefly lag behind changes
    made to the user in the meantime.
    """

    sub: str
    email: str
    permission: str
    jti: str
    iat: int
    exp: int
    store_id: str | None = None
    session_id: str | None = None
    roles: list[str] | None = None
    permissions: list[str] | None = None
    is_system_admin: bool | None = None
    company_ids: list[str] | None = None
    store_ids: list[str] | None = None
    type: str = field(default=ELEVATION_TOKEN_TYPE)

    def to_claims(self) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "type": self.type,
            "sub": self.sub,
            "email": self.email,
            "permission": self.permission,
            "jti": self.jti,
            "iat": self.iat,
            "exp": self.exp,
        }
        optional = {
            "storeId": self.store_id,
            "sessionId": self.session_id,
            "roles": self.roles,
            "permissions": self.permissions,
            "is_system_admin": self.is_system_admin,
            "company_ids": self.company_ids,
            "store_ids": self.store_ids,
        }
        claims.update({key: value for key, value in optional.items() if value is not None})
        return claims

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> ElevationTokenPayload:
        return cls(
            type=str(claims.get("type")),
            sub=str(claims["sub"]),
            email=str(claims.get("email", "")),
            permission=str(claims["permission"]),
            jti=str(claims["jti"]),
            iat=int(claims["iat"]),
            exp=int(claims["exp"]),
            store_id=claims.get("storeId"),
            session_id=claims.get("sessionId"),
            roles=claims.get("roles"),
            permissions=claims.get("permissions"),
            is_system_admin=claims.get("is_system_admin"),
            company_ids=claims.get("company_ids"),
            store_ids=claims.get("store_ids"),
        )


@dataclass(frozen=True)
class GeneratedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    expires_in: int


@dataclass(frozen=True)
class TokenValidationResult:
    valid: bool
    payload: ElevationTokenPayload | None = None
    error: str | None = None
    error_code: TokenErrorCode | None = None


def resolve_lifetime_seconds(value: int | None) -> int:
    # Out-of-range overrides fall back to the default rather than the nearest bound.
    if value is None:
        return ELEVATION_TOKEN_DEFAULT_SECONDS
    if ELEVATION_TOKEN_MIN_SECONDS <= int(value) <= ELEVATION_TOKEN_MAX_SECONDS:
        return int(value)
    logger.warning(
        "elevation_token_lifetime_out_of_range value=%s default=%s",
        value,
        ELEVATION_TOKEN_DEFAULT_SECONDS,
    )
    return ELEVATION_TOKEN_DEFAULT_SECONDS


class ElevationTokenService:
    """Mint and verify short-lived, scoped step-up credentials.

    Validation is stateless: a valid token may be validated any number of
    times. Single use is enforced only by ``mark_token_as_used`` once the
    protected action has run.

    The signing secret is checked at construction. ``audit_service`` is
    optional so issue/validate-only callers need no database; without it
    ``mark_token_as_used`` raises ``ConfigurationError`` when called.
    """

    def __init__(
        self,
        *,
        secret: str | None = None,
        lifetime_seconds: int | None = None,
        audit_service: ElevatedAccessAuditService | None = None,
        settings: Settings | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        resolved_settings = settings or get_settings()
        resolved_secret = (
            secret
            or resolved_settings.elevation_token_secret
            or resolved_settings.jwt_secret
        )
        if not resolved_secret:
            raise ConfigurationError(
                "ELEVATION_TOKEN_SECRET or JWT_SECRET must be configured for elevation tokens"
            )
        self._secret = resolved_secret
        self._lifetime_seconds = resolve_lifetime_seconds(
            lifetime_seconds
            if lifetime_seconds is not None
            else resolved_settings.elevation_token_expiry_seconds
        )
        self._audit = audit_service
        self._time_provider = time_provider or time.time

    @property
    def lifetime_seconds(self) -> int:
        return self._lifetime_seconds

    def generate_token(
        self,
        *,
        user_id: str,
        email: str,
        permission: str,
        store_id: str | None = None,
        session_id: str | None = None,
        roles: list[str] | None = None,
        permissions: list[str] | None = None,
        is_system_admin: bool | None = None,
        company_ids: list[str] | None = None,
        store_ids: list[str] | None = None,
    ) -> GeneratedToken:
        # Issuance is audited by the caller so minting and auditing fail independently.
        issued_at = int(self._time_provider())
        expires_at = issued_at + self._lifetime_seconds
        payload = ElevationTokenPayload(
            sub=user_id,
            email=email,
            permission=permission,
            jti=str(uuid4()),
            iat=issued_at,
            exp=expires_at,
            store_id=store_id,
            session_id=session_id,
            roles=roles,
            permissions=permissions,
            is_system_admin=is_system_admin,
            company_ids=company_ids,
            store_ids=store_ids,
        )
        token = jwt.encode(payload.to_claims(), self._secret, algorithm=ELEVATION_TOKEN_ALGORITHM)
        return GeneratedToken(
            token=token,
            jti=payload.jti,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            expires_in=self._lifetime_seconds,
        )

    def validate_token(
        self,
        token: str,
        expected_permission: str | None = None,
        expected_store_id: str | None = None,
    ) -> TokenValidationResult:
        try:
            # Time claims are judged below against the same clock that minted them.
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ELEVATION_TOKEN_ALGORITHM],
                options={
                    "require": ["exp", "iat", "jti", "sub"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError:
            return TokenValidationResult(
                valid=False, error="Elevation token is invalid", error_code="INVALID"
            )

        if claims.get("type") != ELEVATION_TOKEN_TYPE or "permission" not in claims:
            return TokenValidationResult(
                valid=False, error="Token is not an elevation token", error_code="INVALID"
            )
        try:
            payload = ElevationTokenPayload.from_claims(claims)
        except (KeyError, TypeError, ValueError):
            return TokenValidationResult(
                valid=False, error="Elevation token is invalid", error_code="INVALID"
            )

        if payload.exp <= int(self._time_provider()):
            return TokenValidationResult(
                valid=False, error="Elevation token has expired", error_code="EXPIRED"
            )

        if expected_permission is not None and payload.permission != expected_permission:
            return TokenValidationResult(
                valid=False,
                error="Elevation token does not grant the requested permission",
                error_code="SCOPE_MISMATCH",
            )
        if expected_store_id is not None and payload.store_id != expected_store_id:
            return TokenValidationResult(
                valid=False,
                error="Elevation token is scoped to a different store",
                error_code="SCOPE_MISMATCH",
            )
        return TokenValidationResult(valid=True, payload=payload)

    async def mark_token_as_used(
        self,
        token_jti: str,
        ip_address: str,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> bool:
        if self._audit is None:
            raise ConfigurationError("Elevation token service has no audit service for redemption")
        return await self._audit.log_token_used(
            token_jti=token_jti,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
        )

    def decode_token_unsafe(self, token: str) -> ElevationTokenPayload | None:
        # Error-path logging only; never use the result for authorization.
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None
        if claims.get("type") != ELEVATION_TOKEN_TYPE:
            return None
        try:
            return ElevationTokenPayload.from_claims(claims)
        except (KeyError, TypeError, ValueError):
            return None

    def extract_jti(self, token: str) -> str | None:
        payload = self.decode_token_unsafe(token)
        return payload.jti if payload else None
