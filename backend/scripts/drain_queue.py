#!/usr/bin/env python3
"""
Drain pending Indexing API submissions outside of cron.
Run from backend/: python -m scripts.drain_queue [--tenant <uuid>]

Without --tenant every tenant with pending items is drained, oldest first.
"""
import argparse
import asyncio
import sys
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


async def main(tenant: str | None):
    from gsc_core.database import async_session
    from gsc_core.errors import GscError
    from gsc_core.services.indexation_service import IndexationScheduler, tenants_with_pending_items

    if tenant:
        tenants = [uuid.UUID(tenant)]
    else:
        async with async_session() as db:
            tenants = await tenants_with_pending_items(db)

    if not tenants:
        print("Queue is empty.")
        return

    scheduler = IndexationScheduler()
    for tenant_id in tenants:
        try:
            result = await scheduler.drain_queue(tenant_id)
        except GscError as e:
            print(f"{tenant_id}: skipped ({e.code})")
            continue
        print(
            f"{tenant_id}: submitted={result.submitted} failed={result.failed} "
            f"retrying={result.retrying} still_pending={result.still_pending} "
            f"quota_remaining={result.quota_remaining}"
        )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Drain the Search Console submission queue")
    parser.add_argument("--tenant", help="Only drain this tenant id")
    args = parser.parse_args()
    asyncio.run(main(args.tenant))
