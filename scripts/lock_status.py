#!/usr/bin/env python3
"""
Show scheduler locks, or clear one stuck lock - clearing requires explicit confirmation.

A lock left behind by a request the platform killed expires on its own
after its TTL. Clear it by hand only when waiting out the TTL is not an
option.
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from clawstrate.core.cache import create_redis
from clawstrate.core.locks import LockManager, lock_key
from clawstrate.core.pipeline.registry import SCHEDULES


async def show_locks() -> None:
    """Print holder token and remaining TTL for every registered lock."""
    redis = create_redis()
    try:
        locks = LockManager(redis)
        print(f"{'JOB':<18} {'KEY':<24} {'TTL':>6}  HOLDER")
        for schedule in SCHEDULES.values():
            token, ttl = await locks.inspect(schedule.lock_resource)
            holder = token or "-"
            remaining = f"{ttl}s" if ttl >= 0 else "-"
            print(f"{schedule.name:<18} {lock_key(schedule.lock_resource):<24} {remaining:>6}  {holder}")
    finally:
        await redis.aclose()


async def clear_lock(resource: str) -> bool:
    """Delete a lock key regardless of its holder."""
    redis = create_redis()
    try:
        deleted = await redis.delete(lock_key(resource))
    finally:
        await redis.aclose()

    if not deleted:
        print(f"Warning: {lock_key(resource)} is not held")
        return True

    print(f"\n{lock_key(resource)} cleared.")
    print("  WARNING: a still-running holder is no longer protected from overlap!")
    return True


if __name__ == "__main__":
    if len(sys.argv) == 1:
        asyncio.run(show_locks())
        sys.exit(0)

    if len(sys.argv) != 3 or sys.argv[1] != "--clear":
        print("Usage: python lock_status.py [--clear <resource>]")
        print("\nExample: python lock_status.py --clear pipeline")
        sys.exit(1)

    resource = sys.argv[2]
    known = {s.lock_resource for s in SCHEDULES.values()}
    if resource not in known:
        print(f"Error: unknown lock resource '{resource}'. Known: {sorted(known)}")
        sys.exit(1)

    # Require confirmation
    print(f"\nWARNING: You are about to clear {lock_key(resource)}")
    confirm = input("Type 'CLEAR' to confirm: ")

    if confirm != "CLEAR":
        print("Aborted.")
        sys.exit(1)

    success = asyncio.run(clear_lock(resource))
    sys.exit(0 if success else 1)
