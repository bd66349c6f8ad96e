#!/usr/bin/env python3
"""
Operator utility for feedcast.

Usage:
    python scripts/manage.py --init                 # Create ledger tables
    python scripts/manage.py --check                # Database health check
    python scripts/manage.py --reconcile            # Resolve stale pending uploads
    python scripts/manage.py --reconcile --grace 60 # ... older than 60 minutes
"""

import argparse
import asyncio
import sys
from datetime import timedelta

from loguru import logger

from feedcast.core.logging import setup_logging
from feedcast.models.db import db_manager
from feedcast.models.repositories import UploadLedger
from feedcast.services.ingest import IngestService


def reconcile(grace_minutes: int) -> int:
    service = IngestService(ledger=UploadLedger(db_manager))
    report = asyncio.run(service.reconcile_pending(timedelta(minutes=grace_minutes)))
    logger.info(
        "Reconciled {} pending records: {} committed, {} abandoned",
        report.examined, len(report.committed), len(report.abandoned),
    )
    for key in report.abandoned:
        logger.warning("Abandoned upload {}", key)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="feedcast operator utility")
    parser.add_argument("--init", action="store_true", help="Create ledger tables")
    parser.add_argument("--check", action="store_true", help="Check database health")
    parser.add_argument("--reconcile", action="store_true", help="Resolve pending upload records")
    parser.add_argument("--grace", type=int, default=15, help="Minutes a record must be pending before reconcile")

    args = parser.parse_args(argv)
    setup_logging()

    try:
        if args.check:
            logger.info("Checking database health...")
            if db_manager.health_check():
                logger.info("Database is healthy")
                return 0
            logger.error("Database health check failed")
            return 1

        if args.init:
            db_manager.create_tables()
            logger.info("Ledger tables created")
            return 0

        if args.reconcile:
            return reconcile(args.grace)

        parser.print_help()
        return 2

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    sys.exit(main())
