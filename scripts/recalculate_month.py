#!/usr/bin/env python3
"""Recalculate the bonus history of one billing month.

Usage:
    python scripts/recalculate_month.py 2025-03
    python scripts/recalculate_month.py 2025-03 --patient P-001
    python scripts/recalculate_month.py 2025-03 --resume-from V-0042
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys

import yaml

from visit_billing.bonus import (
    BillingPeriod,
    BonusHistoryStore,
    CatalogLoader,
    CatalogValidationError,
    RecalculationHaltedError,
    RecalculationLockTimeout,
    RecalculationOrchestrator,
    VisitNotFoundError,
    VisitStore,
    load_catalog_from_db,
)
from visit_billing.config import BONUS_CATALOG_PATH, DB_PATH, LOG_LEVEL

logger = logging.getLogger("recalculate_month")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recalculate visiting-nurse surcharges for a month")
    parser.add_argument("period", help="Billing month as YYYY-MM")
    parser.add_argument("--patient", dest="patient_id", help="Only this patient")
    parser.add_argument("--resume-from", help="Visit id to resume a halted run from")
    parser.add_argument("--db", default=DB_PATH, help=f"SQLite database (default: {DB_PATH})")
    parser.add_argument(
        "--catalog",
        default=BONUS_CATALOG_PATH,
        help="Catalog file or directory; 'db' reads the bonus_master table",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = parse_args(argv)

    try:
        period = BillingPeriod.parse(args.period)
    except ValueError as e:
        logger.error(f"Invalid period {args.period!r}: {e}")
        return 2

    try:
        if args.catalog == "db":
            catalog = load_catalog_from_db(args.db)
        else:
            catalog = CatalogLoader(args.catalog).load_catalog()
    except CatalogValidationError as e:
        logger.error(str(e))
        for error in e.errors:
            logger.error(f"  {error}")
        return 2
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Cannot load catalog {args.catalog!r}: {e}")
        return 2

    orchestrator = RecalculationOrchestrator(catalog, VisitStore(args.db), BonusHistoryStore(args.db))

    # Ctrl-C stops between visits; committed visits stay valid
    signal.signal(signal.SIGINT, lambda *_: orchestrator.cancel())

    try:
        summary = orchestrator.recalculate(
            period, patient_id=args.patient_id, resume_from=args.resume_from
        )
    except VisitNotFoundError as e:
        logger.error(str(e))
        return 2
    except RecalculationLockTimeout as e:
        logger.error(f"{e}; another recalculation is running")
        return 3
    except RecalculationHaltedError as e:
        logger.error(str(e))
        print(json.dumps(e.summary.to_dict(), indent=2))
        print(f"Resume with: --resume-from {e.resume_from_visit_id}", file=sys.stderr)
        return 1

    print(json.dumps(summary.to_dict(), indent=2))
    if summary.aborted:
        print(f"Aborted. Resume with: --resume-from {summary.next_visit_id}", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
