from __future__ import annotations

import threading

import pytest

from posguard.core.errors import (
    ElevationDeniedError,
    ElevationRateLimitedError,
    ElevationReplayError,
    ElevationTokenError,
)
from posguard.domain.models import UNKNOWN_USER_ID
from posguard.services import elevated_access as elevated_access_module
from posguard.services.auth.elevated_access_audit import AuditQueryParams, ElevatedAccessAuditService
from posguard.services.auth.elevation_tokens import ElevationTokenService
from posguard.services.auth.passwords import verify_password
from posguard.services.elevated_access import ElevatedAccessService
from posguard.services.permission_cache import PermissionCacheService
from posguard.tests.utils.factories import create_test_store, create_test_user


@pytest.fixture
def audit(session_factory, clock) -> ElevatedAccessAuditService:
    return ElevatedAccessAuditService(session_factory, time_provider=clock)


def _build(session_factory, fake_redis, audit, settings, **token_kwargs) -> ElevatedAccessService:
    return ElevatedAccessService(
        session_factory=session_factory,
        audit=audit,
        tokens=ElevationTokenService(settings=settings, audit_service=audit, **token_kwargs),
        permission_cache=PermissionCacheService(session_factory, fake_redis, key_prefix="test:perm"),
        rate_limit_max_attempts=5,
    )


@pytest.fixture
def elevation(session_factory, fake_redis, audit, settings) -> ElevatedAccessService:
    return _build(session_factory, fake_redis, audit, settings)


async def _events(audit: ElevatedAccessAuditService, **filters) -> list[tuple[str, str]]:
    records = await audit.query_audit_records(AuditQueryParams(**filters))
    return [(record.event_type, record.result) for record in reversed(records)]


async def test_request_verify_consume_then_replay(elevation, audit, session_factory) -> None:
    await create_test_user(
        session_factory, email="manager@example.com", permissions=["CLOSE_DAY"], store_ids=["S1"]
    )

    issued = await elevation.request_elevation(
        email="manager@example.com",
        password="correct horse",
        permission="CLOSE_DAY",
        store_id="S1",
        ip_address="10.0.0.1",
        request_id="req-1",
    )
    assert issued.expires_in == 300

    payload = await elevation.verify_elevation(token=issued.token, permission="CLOSE_DAY", store_id="S1")
    assert payload.jti == issued.jti
    assert payload.store_ids == ["S1"]

    await elevation.consume_elevation(payload=payload, ip_address="10.0.0.1")
    with pytest.raises(ElevationReplayError):
        await elevation.consume_elevation(payload=payload, ip_address="10.0.0.2")

    assert await _events(audit) == [
        ("ELEVATION_REQUESTED", "SUCCESS"),
        ("ELEVATION_GRANTED", "SUCCESS"),
        ("ELEVATION_USED", "SUCCESS"),
        ("ELEVATION_USED", "FAILED_TOKEN_USED"),
    ]


async def test_company_ownership_grants_store_access(elevation, audit, session_factory) -> None:
    await create_test_store(session_factory, store_id="S7", company_id="C1")
    await create_test_store(session_factory, store_id="S8", company_id="C2")
    await create_test_user(
        session_factory, email="owner@example.com", permissions=["VOID_TRANSACTION"], company_ids=["C1"]
    )

    issued = await elevation.request_elevation(
        email="owner@example.com",
        password="correct horse",
        permission="VOID_TRANSACTION",
        store_id="S7",
        ip_address="10.0.0.1",
    )
    assert issued.jti

    with pytest.raises(ElevationDeniedError) as excinfo:
        await elevation.request_elevation(
            email="owner@example.com",
            password="correct horse",
            permission="VOID_TRANSACTION",
            store_id="S8",
            ip_address="10.0.0.1",
        )
    assert excinfo.value.code == "AUTH_FORBIDDEN"
    assert ("ELEVATION_DENIED", "FAILED_PERMISSION") in await _events(audit, store_id="S8")


async def test_missing_permission_is_denied(elevation, audit, session_factory) -> None:
    await create_test_user(session_factory, email="cashier@example.com", permissions=["OPEN_DRAWER"])

    with pytest.raises(ElevationDeniedError):
        await elevation.request_elevation(
            email="cashier@example.com",
            password="correct horse",
            permission="CLOSE_DAY",
            ip_address="10.0.0.1",
        )
    (denied,) = await audit.query_audit_records(AuditQueryParams(event_type="ELEVATION_DENIED"))
    assert denied.result == "FAILED_PERMISSION"
    assert denied.error_code == "PERMISSION_DENIED"


async def test_system_admin_bypasses_permission_checks(elevation, session_factory) -> None:
    await create_test_user(session_factory, email="root@example.com", is_system_admin=True)

    issued = await elevation.request_elevation(
        email="root@example.com",
        password="correct horse",
        permission="CLOSE_DAY",
        store_id="S-any",
        ip_address="10.0.0.1",
    )
    payload = await elevation.verify_elevation(token=issued.token, permission="CLOSE_DAY", store_id="S-any")
    assert payload.is_system_admin is True


async def test_bad_credentials_are_denied_and_audited(elevation, audit, session_factory) -> None:
    user = await create_test_user(session_factory, email="manager@example.com", permissions=["CLOSE_DAY"])

    with pytest.raises(ElevationDeniedError) as excinfo:
        await elevation.request_elevation(
            email="manager@example.com", password="wrong", permission="CLOSE_DAY", ip_address="10.0.0.1"
        )
    assert str(excinfo.value) == "Access denied"

    with pytest.raises(ElevationDeniedError):
        await elevation.request_elevation(
            email="ghost@example.com", password="wrong", permission="CLOSE_DAY", ip_address="10.0.0.1"
        )

    denied = await audit.query_audit_records(AuditQueryParams(event_type="ELEVATION_DENIED"))
    by_email = {record.user_email: record for record in denied}
    assert by_email["manager@example.com"].user_id == user.id
    assert by_email["manager@example.com"].error_code == "INVALID_CREDENTIALS"
    assert by_email["ghost@example.com"].user_id == UNKNOWN_USER_ID
    assert all(record.result == "FAILED_CREDENTIALS" for record in denied)


async def test_inactive_user_is_denied(elevation, audit, session_factory) -> None:
    await create_test_user(
        session_factory, email="former@example.com", permissions=["CLOSE_DAY"], is_active=False
    )
    with pytest.raises(ElevationDeniedError):
        await elevation.request_elevation(
            email="former@example.com", password="correct horse", permission="CLOSE_DAY", ip_address="10.0.0.1"
        )
    (denied,) = await audit.query_audit_records(AuditQueryParams(event_type="ELEVATION_DENIED"))
    assert denied.error_code == "USER_INACTIVE"


async def test_rate_limit_blocks_even_correct_credentials(elevation, audit, session_factory, clock) -> None:
    await create_test_user(session_factory, email="manager@example.com", permissions=["CLOSE_DAY"])
    for _ in range(5):
        with pytest.raises(ElevationDeniedError):
            await elevation.request_elevation(
                email="manager@example.com", password="wrong", permission="CLOSE_DAY", ip_address="10.0.0.1"
            )
        clock.advance(seconds=10)

    with pytest.raises(ElevationRateLimitedError) as excinfo:
        await elevation.request_elevation(
            email="manager@example.com",
            password="correct horse",
            permission="CLOSE_DAY",
            ip_address="10.0.0.1",
        )
    assert excinfo.value.code == "RATE_LIMITED"
    assert excinfo.value.window_ms == 15 * 60 * 1000

    (limited,) = await audit.query_audit_records(AuditQueryParams(event_type="ELEVATION_RATE_LIMITED"))
    assert limited.attempt_count == 5
    assert limited.result == "FAILED_RATE_LIMIT"
    assert await audit.query_audit_records(AuditQueryParams(event_type="ELEVATION_GRANTED")) == []

    # A different address and account are unaffected.
    await create_test_user(session_factory, email="other@example.com", permissions=["CLOSE_DAY"])
    issued = await elevation.request_elevation(
        email="other@example.com", password="correct horse", permission="CLOSE_DAY", ip_address="10.0.0.2"
    )
    assert issued.token


async def test_email_case_variants_share_the_rate_limit(elevation, audit, session_factory) -> None:
    await create_test_user(session_factory, email="mgr@example.com", permissions=["CLOSE_DAY"])
    for _ in range(5):
        with pytest.raises(ElevationDeniedError):
            await elevation.request_elevation(
                email="mgr@example.com", password="wrong", permission="CLOSE_DAY", ip_address="10.0.0.1"
            )

    # Fresh address, correct password, differently cased email: still the same account.
    with pytest.raises(ElevationRateLimitedError):
        await elevation.request_elevation(
            email="  MGR@Example.com ",
            password="correct horse",
            permission="CLOSE_DAY",
            ip_address="10.9.1.1",
        )

    records = await audit.query_audit_records()
    assert {record.user_email for record in records} == {"mgr@example.com"}
    assert await audit.query_audit_records(AuditQueryParams(event_type="ELEVATION_GRANTED")) == []


async def test_password_check_runs_off_the_event_loop(elevation, session_factory, monkeypatch) -> None:
    await create_test_user(session_factory, email="manager@example.com", permissions=["CLOSE_DAY"])
    loop_thread = threading.get_ident()
    seen_threads: list[int] = []

    def _recording_verify(password: str, hashed: str | None) -> bool:
        seen_threads.append(threading.get_ident())
        return verify_password(password, hashed)

    monkeypatch.setattr(elevated_access_module, "verify_password", _recording_verify)
    issued = await elevation.request_elevation(
        email="manager@example.com", password="correct horse", permission="CLOSE_DAY", ip_address="10.0.0.1"
    )

    assert issued.token
    assert len(seen_threads) == 1
    assert seen_threads[0] != loop_thread


async def test_verify_expired_token_records_expiry(session_factory, fake_redis, audit, settings, clock) -> None:
    await create_test_user(session_factory, email="manager@example.com", permissions=["CLOSE_DAY"])
    elevation = _build(session_factory, fake_redis, audit, settings, time_provider=clock.timestamp)
    issued = await elevation.request_elevation(
        email="manager@example.com", password="correct horse", permission="CLOSE_DAY", ip_address="10.0.0.1"
    )
    clock.advance(seconds=301)

    for _ in range(2):
        with pytest.raises(ElevationTokenError) as excinfo:
            await elevation.verify_elevation(token=issued.token, permission="CLOSE_DAY")
        assert excinfo.value.code == "EXPIRED"

    expired = await audit.query_audit_records(AuditQueryParams(event_type="ELEVATION_EXPIRED"))
    assert [record.token_jti for record in expired] == [issued.jti]


async def test_verify_rejects_out_of_scope_token(elevation, session_factory) -> None:
    await create_test_user(
        session_factory, email="manager@example.com", permissions=["CLOSE_DAY"], store_ids=["S1"]
    )
    issued = await elevation.request_elevation(
        email="manager@example.com",
        password="correct horse",
        permission="CLOSE_DAY",
        store_id="S1",
        ip_address="10.0.0.1",
    )
    with pytest.raises(ElevationTokenError) as excinfo:
        await elevation.verify_elevation(token=issued.token, permission="CLOSE_DAY", store_id="S2")
    assert excinfo.value.code == "SCOPE_MISMATCH"
