#!/usr/bin/env python3
"""Run one batch job from cron.

Schedule (suggested):
- mapping: every 15 minutes
- retry: hourly
- cleanup: nightly
- consistency: weekly

Single-flight:
- The same Redis lock as the admin endpoint guards each job type, so a cron
  run and a manual trigger never overlap. Without Redis the job still runs
  (unguarded).

Usage:
  python -m scripts.run_job mapping smartphones
  python -m scripts.run_job cleanup names,duplicates
  python -m scripts.run_job consistency
  python -m scripts.run_job retry 5
"""

import asyncio
import sys
import os

# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv  # noqa: E402

from pricecatalog.services.jobs import JOB_TYPES, run_job  # noqa: E402
from pricecatalog.services.registry_cache import get_registry_cache  # noqa: E402
from pricecatalog.settings import get_settings  # noqa: E402
from pricecatalog.stores.postgres import close_db, get_session_factory, init_db, ping_db  # noqa: E402
from pricecatalog.stores.redis import (  # noqa: E402
    acquire_lock,
    close_redis,
    init_redis,
    is_redis_ready,
    job_lock_key,
    release_lock,
)

load_dotenv()


async def main(job_type: str, parameters: str | None) -> int:
    if job_type not in JOB_TYPES:
        print({"ok": False, "error": f"unknown job type {job_type!r}", "supported": list(JOB_TYPES)})
        return 2

    settings = get_settings()

    # Initialize shared connections (same as API lifespan, but for a one-off cron run)
    await init_db()
    await ping_db()
    try:
        await init_redis()
    except Exception:
        # Cron can still run without Redis (no single-flight guard).
        pass

    lock_key = job_lock_key(job_type)
    locked = False
    try:
        if is_redis_ready():
            locked = await acquire_lock(lock_key, settings.job_lock_ttl_seconds)
            if not locked:
                print({"ok": False, "job_type": job_type, "error": "job already running"})
                return 1

        result = await run_job(
            job_type,
            parameters,
            session_factory=get_session_factory(),
            cache=get_registry_cache(),
            settings=settings,
        )

        # Final output for cron logs (single JSON-ish blob)
        print({"ok": True, "job_type": job_type, "parameters": parameters, "counts": result.counts})
        print(result.description)
        return 0
    finally:
        if locked:
            await release_lock(lock_key)
        await close_redis()
        await close_db()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        raise SystemExit(f"usage: python -m scripts.run_job <{'|'.join(JOB_TYPES)}> [parameters]")
    args = sys.argv[1:]
    raise SystemExit(asyncio.run(main(args[0], args[1] if len(args) > 1 else None)))
