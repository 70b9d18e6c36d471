"""
Maintenance CLI
===============

Out-of-band repair and cleanup jobs for the chat stores. Every command is
idempotent and can be interrupted and re-run.

COMMANDS:
- migrate:  move members off legacy chat ids
- dedupe:   resolve duplicate user records by email
- sync:     put onboarded members into their neighborhood chat
- all:      migrate, dedupe, sync in that order
- sweep:    drop expired incidents and stale presence/typing records

USAGE:
    python -m claridad.maintenance [COMMAND]
"""
import argparse
import asyncio
import logging
import sys
from starlette.concurrency import run_in_threadpool
from .config import settings, configure_logging
from .db import SessionLocal, engine, init_db
from .realtime import connect_realtime
from .reconcile import Report
from .services import Services

logger = logging.getLogger("claridad.maintenance")

def print_report(name: str, report: Report) -> None:
    print(f"{name}: {len(report.changed)} changed, {len(report.errors)} errors")
    for entry in report.changed:
        print(f"  + {entry}")
    for entry in report.errors:
        print(f"  ! {entry}")

async def run(command: str, services: Services) -> int:
    reconciler = services.reconciler
    if command == "sweep":
        pulled = await run_in_threadpool(services.incidents.sweep_expired)
        presence, typing = await run_in_threadpool(services.presence.purge_stale)
        print(f"sweep: {pulled} chats had expired incidents, {presence} presence and {typing} typing records purged")
        return 0
    if command == "all":
        reports = await reconciler.run_all()
    else:
        job = {
            "migrate": reconciler.migrate_legacy_ids,
            "dedupe": reconciler.resolve_duplicate_users,
            "sync": reconciler.sync_memberships,
        }[command]
        reports = {command: await job()}
    for name, report in reports.items():
        print_report(name, report)
    return 0 if all(r.ok for r in reports.values()) else 1

async def main_async(command: str) -> int:
    await init_db()
    client, mongo_db = connect_realtime(settings)
    try:
        return await run(command, Services.build(SessionLocal, mongo_db, settings))
    finally:
        client.close()
        await engine.dispose()

def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Claridad chat maintenance")
    parser.add_argument("command", choices=["migrate", "dedupe", "sync", "all", "sweep"])
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    logger.info("running %s", args.command)
    return asyncio.run(main_async(args.command))

if __name__ == "__main__":
    sys.exit(main())
