from __future__ import annotations

import argparse
import asyncio

from posguard.core.logging import configure_logging
from posguard.persistence.db import create_engine, create_session_factory
from posguard.services.auth.elevated_access_audit import ElevatedAccessAuditService


async def sweep(*, batch_size: int) -> int:
    # Record ELEVATION_EXPIRED for grants that lapsed without being redeemed.
    engine = create_engine()
    try:
        audit = ElevatedAccessAuditService(create_session_factory(engine))
        seen: set[str] = set()
        while True:
            jtis = await audit.list_expired_unused_grants(limit=batch_size)
            # Failed writes leave grants eligible; stop once a batch brings nothing new.
            fresh = [jti for jti in jtis if jti not in seen]
            if not fresh:
                break
            for jti in fresh:
                await audit.log_token_expired(jti)
            seen.update(fresh)
            if len(jtis) < batch_size:
                break
        return len(seen)
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Record expiry events for unused elevation tokens")
    parser.add_argument("--batch-size", type=int, default=500)
    args = parser.parse_args()
    configure_logging()
    expired = asyncio.run(sweep(batch_size=args.batch_size))
    print(f"expired_elevation_tokens={expired}")


if __name__ == "__main__":
    main()
