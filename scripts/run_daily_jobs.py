"""
Daily job runner.

Runs the payment plan and accounting sync jobs directly against the
database, for schedulers that prefer a process over the HTTP triggers.

    python -m scripts.run_daily_jobs payment-plans --as-of 2026-01-15
    python -m scripts.run_daily_jobs accounting-sync
    python -m scripts.run_daily_jobs recover-stuck --older-than-minutes 60
"""

import argparse
import asyncio
import logging
import sys
from datetime import date

from plan_ledger.app.core.config import settings
from plan_ledger.app.core.dependencies import build_services
from plan_ledger.app.core.observability import configure_logging
from plan_ledger.app.db.session import AsyncSessionLocal
from plan_ledger.app.domain.ledger.daily_jobs import run_payment_plans, run_accounting_sync

logger = logging.getLogger("plan_ledger.jobs")


async def _run(args: argparse.Namespace):
    services = build_services()
    async with AsyncSessionLocal() as db:
        if args.command == "payment-plans":
            return await run_payment_plans(db, services, as_of=args.as_of)
        if args.command == "accounting-sync":
            return await run_accounting_sync(db, services)
        return await services.processor.recover_stuck(
            db, older_than_minutes=args.older_than_minutes, actor="cli"
        )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run Plan Ledger jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    plans = sub.add_parser("payment-plans", help="Recover, charge due installments, send reminders")
    plans.add_argument("--as-of", type=date.fromisoformat, default=None)

    sub.add_parser("accounting-sync", help="Push pending invoices and payments to accounting")

    stuck = sub.add_parser("recover-stuck", help="Reconcile installments left in processing")
    stuck.add_argument("--older-than-minutes", type=int, default=None)

    args = parser.parse_args(argv)
    configure_logging(settings.log_level)

    try:
        result = asyncio.run(_run(args))
    except Exception:
        logger.exception("Job failed", extra={"command": args.command})
        return 1

    print(result.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
