#!/usr/bin/env python3
"""
ticketctl — Command-line triggers for cron or Cloud Scheduler style jobs.

Usage:
    # One dispatch cycle (highest non-empty priority tier):
    python scripts/ticketctl.py process

    # Retention sweep + archive (default: archive.retention_days):
    python scripts/ticketctl.py sweep --retention-days 7

    # Create the archive table, or only report its status:
    python scripts/ticketctl.py init-archive
    python scripts/ticketctl.py init-archive --check

Every command prints its result as JSON. Exit code 1 means the command ran
but reported a failure (fetch errors with no work, unarchived tickets).
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _process(pipeline) -> tuple[dict, int]:
    result = await pipeline.dispatcher.run_cycle()
    failed = result.outcome.value == "no_work" and bool(result.fetch_errors)
    return result.to_dict(), 1 if failed else 0


async def _sweep(pipeline, retention_days=None) -> tuple[dict, int]:
    result = await pipeline.service.sweep_and_archive(retention_days)
    return result.to_dict(), 1 if result.archive_failed else 0


async def _archive_status(pipeline) -> tuple[dict, int]:
    from sqlalchemy import text
    from database.models import Base

    engine = pipeline.archiver.db.engine
    dialect = engine.dialect.name
    async with engine.connect() as conn:
        # Database-specific table listing
        if dialect == "postgresql":
            result = await conn.execute(text(
                "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
            ))
        elif dialect == "mysql":
            result = await conn.execute(text("SHOW TABLES"))
        else:  # sqlite
            result = await conn.execute(text(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            ))
        existing = [row[0] for row in result.fetchall()]

    missing = sorted(set(Base.metadata.tables.keys()) - set(existing))
    return {
        "dialect": dialect,
        "tables_defined": sorted(Base.metadata.tables.keys()),
        "tables_existing": sorted(existing),
        "tables_missing": missing,
    }, 1 if missing else 0


async def run_command(args, pipeline=None) -> tuple[dict, int]:
    """Run one parsed command against a started pipeline."""
    from core.bootstrap import build_pipeline

    pipeline = pipeline or build_pipeline()
    # The archive commands never touch the queue
    if args.command == "init-archive":
        try:
            if args.check:
                return await _archive_status(pipeline)
            await pipeline.archiver.init()
            return {"initialized": True}, 0
        finally:
            await pipeline.archiver.close()

    await pipeline.start(init_archive=args.command == "sweep")
    try:
        if args.command == "process":
            return await _process(pipeline)
        return await _sweep(pipeline, args.retention_days)
    finally:
        await pipeline.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ticket pipeline triggers")
    parser.add_argument("--config", help="Path to settings.yaml (default: $TICKETS_CONFIG)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("process", help="Run one priority-cascade dispatch cycle")

    sweep = sub.add_parser("sweep", help="Sweep retention-expired closed tickets into the archive")
    sweep.add_argument("--retention-days", type=int, default=None,
                       help="Override archive.retention_days")

    init = sub.add_parser("init-archive", help="Create the archive table")
    init.add_argument("--check", action="store_true", help="Check status only")
    return parser


def main(argv=None) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    args = build_parser().parse_args(argv)

    from config.logging_setup import configure_logging
    from config.settings import load_settings
    settings = load_settings(args.config)
    # stdout carries the JSON result
    configure_logging(debug=settings.debug, json_logs=settings.json_logs, stream=sys.stderr)

    output, code = asyncio.run(run_command(args))
    print(json.dumps(output, indent=2, default=str))
    return code


if __name__ == "__main__":
    sys.exit(main())
