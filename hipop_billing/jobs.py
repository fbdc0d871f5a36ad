#!/usr/bin/env python
"""
HiPop Billing scheduled jobs
============================

Usage:
    python -m hipop_billing.jobs <command> [options]

Commands:
    monthly-reset   Archive last month's usage and reset the current month
    reset           Ad-hoc reset for all users or selected users

Examples:
    python -m hipop_billing.jobs monthly-reset
    python -m hipop_billing.jobs reset --type daily
    python -m hipop_billing.jobs reset --type all --user u1 --user u2

Prints a JSON summary on stdout. Exit code 0 when every user was reset, 1 when
some users failed, 2 when the job could not run.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from hipop_billing.billing.base import ResetResult, ResetType
from hipop_billing.config import database
from hipop_billing.config.settings import Settings, load_settings
from hipop_billing.engine import EntitlementEngine
from hipop_billing.entitlements.reset import ALL_USERS
from hipop_billing.errors import BillingError
from hipop_billing.logs.logging_config import setup_logging

logger = logging.getLogger("hipop_billing.jobs")


async def run_job(args: argparse.Namespace, settings: Settings) -> ResetResult:
    client = database.create_client(settings)
    try:
        engine = EntitlementEngine(database.get_database(client, settings), settings)
        await database.verify_connection(client, settings)
        try:
            if args.command == "monthly-reset":
                return await engine.monthly_usage_reset(executed_by=args.executed_by)
            scope = args.users if args.users else ALL_USERS
            return await engine.reset_usage(scope, args.type, executed_by=args.executed_by)
        finally:
            await engine.aclose()
    finally:
        client.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hipop-billing-jobs",
        description="HiPop Billing scheduled jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available jobs")

    monthly_parser = subparsers.add_parser("monthly-reset", help="Archive last month and reset the current month")
    monthly_parser.add_argument("--executed-by", default="scheduler", help="Initiator recorded in the audit log")

    reset_parser = subparsers.add_parser("reset", help="Reset usage counters")
    reset_parser.add_argument(
        "--type",
        required=True,
        choices=[t.value for t in ResetType],
        help="Which counters to clear",
    )
    reset_parser.add_argument(
        "--user",
        dest="users",
        action="append",
        default=[],
        help="User id to reset (repeatable; default: all users)",
    )
    reset_parser.add_argument("--executed-by", default="cli", help="Initiator recorded in the audit log")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    settings = load_settings()
    setup_logging(settings.log_level, as_json=settings.logs_as_json)

    try:
        result = asyncio.run(run_job(args, settings))
    except BillingError as e:
        logger.critical(f"Job {args.command} failed: {e}")
        print(json.dumps({"success": False, "error": e.code, "message": str(e)}))
        return 2

    print(json.dumps(result.to_dict()))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
