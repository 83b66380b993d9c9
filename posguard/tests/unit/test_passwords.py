from __future__ import annotations

from posguard.services.auth import passwords
from posguard.services.auth.passwords import hash_password, verify_password


def test_dummy_hash_is_computed_on_first_missing_user_check() -> None:
    passwords._dummy_hash.cache_clear()
    assert passwords._dummy_hash.cache_info().currsize == 0

    assert verify_password("anything", None) is False
    assert passwords._dummy_hash.cache_info().currsize == 1

    # Later misses reuse the cached hash.
    assert verify_password("anything", None) is False
    assert passwords._dummy_hash.cache_info().hits >= 1


def test_hash_and_verify() -> None:
    hashed = hash_password("correct horse", rounds=4)
    assert hashed.startswith("$2")
    assert verify_password("correct horse", hashed) is True
    assert verify_password("wrong", hashed) is False


def test_malformed_hash_never_verifies() -> None:
    assert verify_password("correct horse", "not-a-bcrypt-hash") is False
