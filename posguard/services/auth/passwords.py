"""bcrypt helpers for elevation credential checks."""

from __future__ import annotations

from functools import lru_cache

import bcrypt


DEFAULT_ROUNDS = 12


@lru_cache
def _dummy_hash() -> str:
    # Checked against when the user does not exist so lookups cost the same either way.
    return bcrypt.hashpw(b"posguard-dummy-password", bcrypt.gensalt(rounds=DEFAULT_ROUNDS)).decode("utf-8")


def hash_password(password: str, *, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a bcrypt hash for the given password."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed: str | None) -> bool:
    """Constant-time bcrypt comparison; a missing hash never verifies."""
    candidate = hashed or _dummy_hash()
    try:
        matched = bcrypt.checkpw(password.encode("utf-8"), candidate.encode("utf-8"))
    except ValueError:
        return False
    return matched and hashed is not None
