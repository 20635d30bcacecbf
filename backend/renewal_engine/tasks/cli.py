"""Command-line entry point for cron-driven scheduling

    renewal-engine tick      run one renewal tick
    renewal-engine retries   fire due payment retries
    renewal-engine delayed   run due grace-end tasks
    renewal-engine init-db   create tables (development and tests)
"""
import argparse
import json
import logging
import sys
from typing import List, Optional

from renewal_engine.core.config import settings
from renewal_engine.core.logging import setup_logging
from renewal_engine.db.session import init_db
from renewal_engine.services.container import build_services
from renewal_engine.tasks.scheduler import run_job

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="renewal-engine", description="Recurring billing scheduler")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("tick", help="Run one renewal tick")
    subparsers.add_parser("retries", help="Fire due payment retries")
    subparsers.add_parser("delayed", help="Run due grace-end tasks")
    subparsers.add_parser("init-db", help="Create database tables")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    if args.command == "init-db":
        init_db()
        logger.info("Database initialized successfully")
        return 0

    services = build_services(settings)
    jobs = {
        "tick": ("renewal_tick", services.scheduler.tick),
        "retries": ("retry_runner", services.retry_engine.process_due_retries),
        "delayed": ("grace_end", services.grace.process_due_tasks),
    }
    name, job = jobs[args.command]
    summary = run_job(name, job)
    print(json.dumps(summary))
    return 1 if summary.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
