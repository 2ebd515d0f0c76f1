from __future__ import annotations

import argparse
import asyncio
import json
import logging

from clinic_booking.core.errors import ReconciliationInProgress
from clinic_booking.core.settings import settings
from clinic_booking.db.session import SessionLocal
from clinic_booking.services.ledger_client import LedgerClient
from clinic_booking.services.ledger_sync import drain_outbox
from clinic_booking.services.reconciliation.engine import run_reconciliation


async def _run(apply: bool, drain: bool, verbose: bool) -> int:
    ledger = LedgerClient.from_settings(settings)
    try:
        report = await run_reconciliation(SessionLocal, ledger, triggered_by="cli", apply=apply)
    except ReconciliationInProgress as exc:
        print(f"Reconciliation not started: {exc.detail}")
        return 2

    print(f"Reconciliation run {report.run_id} ({'apply' if apply else 'dry run'})")
    print(f"Ledger: {report.summary.get('ledger')}  window: {report.summary.get('window')}")
    print(f"Findings: {len(report.findings)}  errors: {report.errors}")
    for finding in report.findings:
        line = (
            f"  {finding.entity_type}:{finding.entity_id} "
            f"{finding.divergence_kind} -> {finding.action_taken}"
        )
        if verbose and finding.detail:
            line += f" {json.dumps(finding.detail, sort_keys=True, default=str)}"
        print(line)
    if not apply:
        print("Dry run only. Use --apply to persist repairs.")
    elif drain:
        stats = await drain_outbox(SessionLocal, ledger, limit=1000)
        print(f"Outbox: pushed={stats['pushed']} failed={stats['failed']}")
    return 1 if report.errors else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile bookings, projections and the external ledger.")
    parser.add_argument("--apply", action="store_true", help="Write repairs to the database.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report divergences without repairing (default).",
    )
    parser.add_argument(
        "--drain-outbox",
        action="store_true",
        help="After an applied run, push pending ledger sync rows.",
    )
    parser.add_argument("--verbose", action="store_true", help="Print finding details.")
    args = parser.parse_args()
    apply = args.apply and not args.dry_run

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    return asyncio.run(_run(apply, args.drain_outbox, args.verbose))


if __name__ == "__main__":
    raise SystemExit(main())
