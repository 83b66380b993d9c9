from __future__ import annotations

import time

import jwt
import pytest

from posguard.core.config import Settings
from posguard.core.errors import ConfigurationError
from posguard.services.auth.elevated_access_audit import ElevatedAccessAuditService
from posguard.services.auth.elevation_tokens import (
    ELEVATION_TOKEN_TYPE,
    ElevationTokenService,
    resolve_lifetime_seconds,
)
from posguard.tests.conftest import TEST_SECRET


OTHER_SECRET = "another-elevation-secret-0123456789abcdef"
SESSION_SECRET = "session-signing-secret-0123456789abcdef"


@pytest.fixture
def tokens(settings) -> ElevationTokenService:
    return ElevationTokenService(settings=settings)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, 300), (30, 300), (59, 300), (60, 60), (120, 120), (900, 900), (901, 300), (1000, 300)],
)
def test_resolve_lifetime_falls_back_to_default_outside_bounds(value, expected) -> None:
    assert resolve_lifetime_seconds(value) == expected


def test_lifetime_is_read_from_settings(settings) -> None:
    configured = settings.model_copy(update={"elevation_token_expiry_seconds": 120})
    service = ElevationTokenService(settings=configured)
    issued = service.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY")

    claims = jwt.decode(issued.token, TEST_SECRET, algorithms=["HS256"])
    assert service.lifetime_seconds == 120
    assert issued.expires_in == 120
    assert claims["exp"] - claims["iat"] == 120
    assert (issued.expires_at - issued.issued_at).total_seconds() == 120


def test_generated_token_carries_scope_and_identity_snapshot(tokens) -> None:
    issued = tokens.generate_token(
        user_id="u-1",
        email="m@example.com",
        permission="CLOSE_DAY",
        store_id="S1",
        session_id="sess-9",
        roles=["MANAGER"],
        permissions=["CLOSE_DAY"],
        company_ids=["C1"],
    )
    claims = jwt.decode(issued.token, TEST_SECRET, algorithms=["HS256"])

    assert claims["type"] == ELEVATION_TOKEN_TYPE
    assert claims["jti"] == issued.jti
    assert claims["storeId"] == "S1"
    assert claims["sessionId"] == "sess-9"
    assert claims["roles"] == ["MANAGER"]
    assert claims["company_ids"] == ["C1"]
    assert "store_ids" not in claims
    assert claims["exp"] - claims["iat"] == 300


def test_validate_accepts_matching_scope_repeatedly(tokens) -> None:
    issued = tokens.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY", store_id="S1")

    for _ in range(2):
        result = tokens.validate_token(issued.token, "CLOSE_DAY", "S1")
        assert result.valid is True
        assert result.payload is not None
        assert result.payload.sub == "u-1"
        assert result.payload.store_id == "S1"

    # Omitted expectations are not checked.
    assert tokens.validate_token(issued.token).valid is True


def test_validate_rejects_other_permission(tokens) -> None:
    issued = tokens.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY", store_id="S1")
    result = tokens.validate_token(issued.token, "VOID_TRANSACTION", "S1")
    assert result.valid is False
    assert result.error_code == "SCOPE_MISMATCH"
    assert result.payload is None


def test_validate_rejects_other_store(tokens) -> None:
    issued = tokens.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY", store_id="S1")
    result = tokens.validate_token(issued.token, "CLOSE_DAY", "S2")
    assert result.error_code == "SCOPE_MISMATCH"

    unscoped = tokens.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY")
    assert tokens.validate_token(unscoped.token, "CLOSE_DAY", "S1").error_code == "SCOPE_MISMATCH"


def test_validate_judges_expiry_with_the_injected_clock(settings, clock) -> None:
    service = ElevationTokenService(settings=settings, time_provider=clock.timestamp)
    issued = service.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY")
    assert service.validate_token(issued.token, "CLOSE_DAY").valid is True

    clock.advance(seconds=299)
    assert service.validate_token(issued.token, "CLOSE_DAY").valid is True

    clock.advance(seconds=2)
    result = service.validate_token(issued.token, "CLOSE_DAY")
    assert result.valid is False
    assert result.error_code == "EXPIRED"


def test_validate_reports_wall_clock_expiry(settings) -> None:
    # Issued 301 seconds ago with the default 300 second lifetime.
    stale = ElevationTokenService(settings=settings, time_provider=lambda: time.time() - 301)
    issued = stale.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY")

    result = ElevationTokenService(settings=settings).validate_token(issued.token, "CLOSE_DAY")
    assert result.valid is False
    assert result.error_code == "EXPIRED"


def test_validate_rejects_foreign_and_malformed_tokens(tokens) -> None:
    now = int(time.time())
    base_claims = {"sub": "u-1", "permission": "CLOSE_DAY", "jti": "j-1", "iat": now, "exp": now + 300}

    session_token = jwt.encode({**base_claims, "type": "access"}, TEST_SECRET, algorithm="HS256")
    other_secret = jwt.encode({**base_claims, "type": "elevation"}, OTHER_SECRET, algorithm="HS256")
    missing_jti = jwt.encode(
        {key: value for key, value in {**base_claims, "type": "elevation"}.items() if key != "jti"},
        TEST_SECRET,
        algorithm="HS256",
    )

    bad_expiry = jwt.encode({**base_claims, "type": "elevation", "exp": "soon"}, TEST_SECRET, algorithm="HS256")

    for token in (session_token, other_secret, missing_jti, bad_expiry, "not-a-jwt"):
        result = tokens.validate_token(token, "CLOSE_DAY")
        assert result.valid is False
        assert result.error_code == "INVALID"


def test_decode_unsafe_reads_expired_tokens_without_verification(settings, tokens) -> None:
    stale = ElevationTokenService(settings=settings, time_provider=lambda: time.time() - 600)
    issued = stale.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY")

    payload = tokens.decode_token_unsafe(issued.token)
    assert payload is not None
    assert payload.jti == issued.jti
    assert tokens.extract_jti(issued.token) == issued.jti
    assert tokens.decode_token_unsafe("garbage") is None
    assert tokens.extract_jti("garbage") is None

    session_token = jwt.encode({"sub": "u-1", "type": "access"}, TEST_SECRET, algorithm="HS256")
    assert tokens.decode_token_unsafe(session_token) is None


def test_missing_secret_is_a_configuration_error(monkeypatch) -> None:
    monkeypatch.delenv("ELEVATION_TOKEN_SECRET", raising=False)
    monkeypatch.delenv("JWT_SECRET", raising=False)
    with pytest.raises(ConfigurationError):
        ElevationTokenService(settings=Settings(_env_file=None))


def test_session_secret_is_used_when_no_dedicated_secret(monkeypatch) -> None:
    monkeypatch.delenv("ELEVATION_TOKEN_SECRET", raising=False)
    service = ElevationTokenService(settings=Settings(_env_file=None, jwt_secret=SESSION_SECRET))
    issued = service.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY")
    assert jwt.decode(issued.token, SESSION_SECRET, algorithms=["HS256"])["jti"] == issued.jti


async def test_mark_token_as_used_requires_audit_service(tokens) -> None:
    with pytest.raises(ConfigurationError):
        await tokens.mark_token_as_used("j-1", "10.0.0.1")


async def test_mark_token_as_used_redeems_once(settings, session_factory, clock) -> None:
    audit = ElevatedAccessAuditService(session_factory, time_provider=clock)
    service = ElevationTokenService(settings=settings, audit_service=audit)
    issued = service.generate_token(user_id="u-1", email="m@example.com", permission="CLOSE_DAY")
    await audit.log_elevation_granted(
        user_id="u-1",
        user_email="m@example.com",
        requested_permission="CLOSE_DAY",
        token_jti=issued.jti,
        token_issued_at=issued.issued_at,
        token_expires_at=issued.expires_at,
        ip_address="10.0.0.1",
    )

    assert await service.mark_token_as_used(issued.jti, "10.0.0.1") is True
    assert await service.mark_token_as_used(issued.jti, "10.0.0.1") is False
