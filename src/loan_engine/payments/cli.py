"""Loan payments command line interface.

Provides operational tools for:
- Running the sweep (once, or as a loop)
- The reconciliation report
- Listing money waiting on an operator
- Checking configuration before a deploy

Usage:
    python -m loan_engine.payments.cli sweep --once
    python -m loan_engine.payments.cli report --since 2026-01-01T00:00:00Z
    python -m loan_engine.payments.cli dead-letters
    python -m loan_engine.payments.cli config-check --production
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from loan_engine.config import Settings, get_settings
from loan_engine.database import make_engine, make_session_factory
from loan_engine.logging_config import setup_logging
from loan_engine.payments.config import (
    PaymentsConfig,
    build_payments_config,
    validate_production_config,
)
from loan_engine.payments.facade import LoanPayments
from loan_engine.payments.model import Provider
from loan_engine.payments.providers import PaymentChannelProvider, build_providers
from loan_engine.payments.services.reconciliation import ReconciliationReport
from loan_engine.payments.services.sweep import SweepRunner


def parse_datetime(s: str) -> datetime:
    """Parse ISO datetime string."""
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


class PaymentsCli:
    """Loan payments operational CLI."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: sessionmaker[Session] | None = None,
        payments_config: PaymentsConfig | None = None,
    ) -> None:
        self.parser = self._build_parser()
        self._settings = settings
        self._session_factory = session_factory
        self._payments_config = payments_config
        self._engine = None
        self._providers: dict[Provider, PaymentChannelProvider] | None = None

    def _build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="python -m loan_engine.payments.cli",
            description="Loan payments operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        sweep = subparsers.add_parser("sweep", help="Poll, expire and report PENDING intents")
        sweep.add_argument(
            "--once",
            action="store_true",
            help="Run a single sweep and exit (default: loop forever)",
        )

        report = subparsers.add_parser("report", help="Print the reconciliation report")
        report.add_argument(
            "--since",
            type=parse_datetime,
            help="Only count activity after this timestamp (ISO format)",
        )
        report.add_argument(
            "--json",
            action="store_true",
            help="Emit JSON instead of text",
        )

        subparsers.add_parser(
            "dead-letters",
            help="List confirmed money that has not reached a loan",
        )

        check = subparsers.add_parser("config-check", help="Validate payments configuration")
        check.add_argument(
            "--production",
            action="store_true",
            help="Also apply production safety checks",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "sweep": self._cmd_sweep,
            "report": self._cmd_report,
            "dead-letters": self._cmd_dead_letters,
            "config-check": self._cmd_config_check,
        }
        return handlers[parsed.command](parsed)

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _config(self) -> PaymentsConfig:
        if self._payments_config is None:
            self._payments_config = build_payments_config(self.settings)
        return self._payments_config

    def _sessions(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._engine = make_engine(self.settings.database_url)
            self._session_factory = make_session_factory(self._engine)
        return self._session_factory

    def _payments(self, session: Session) -> LoanPayments:
        if self._providers is None:
            self._providers = build_providers(self._config())
        return LoanPayments(session, self._config(), providers=self._providers)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _cmd_sweep(self, args: argparse.Namespace) -> int:
        """Run the sweep."""
        runner = SweepRunner(
            self._sessions(),
            self._payments,
            interval_seconds=self._config().sweep.interval_seconds,
            engine=self._engine,
        )
        if not args.once:
            runner.run_forever()
            return 0

        report = runner.run_once()
        if report is None:
            print("Another sweep is running; nothing done.")
            return 0
        for key, value in report.summary().items():
            print(f"{key:>12}: {value}")
        return 0

    def _cmd_report(self, args: argparse.Namespace) -> int:
        """Print the reconciliation report."""
        with self._sessions()() as session:
            report = self._payments(session).reconciliation_report(args.since)

        if args.json:
            print(json.dumps(_report_dict(report), indent=2, default=str))
            return 0 if report.is_clean else 2

        print("Reconciliation Report")
        print("=" * 40)
        if report.since:
            print(f"Since: {report.since.isoformat()}")
        print("\nIntents:")
        for state, count in report.intents_by_state.items():
            print(f"  {state:<10} {count:>8}")
        print(f"  late-settled {report.late_settled:>6}")
        print("\nMoney:")
        print(f"  Confirmed:   {report.confirmed_total:>15,.2f}")
        print(f"  Allocated:   {report.allocated_total:>15,.2f}")
        print(f"  Reversed:    {report.reversed_total:>15,.2f}")
        print(f"  Credit:      {report.credit_total:>15,.2f}")
        if report.flag_counts:
            print("\nFlags:")
            for kind, count in sorted(report.flag_counts.items()):
                print(f"  {kind:<16} {count:>6}")
        print(f"\nOpen dead letters:        {len(report.open_dead_letters)}")
        print(f"Open unattributed receipts: {len(report.open_unattributed)}")
        print("\n" + "=" * 40)
        print("Overall: CLEAN" if report.is_clean else "Overall: NEEDS ATTENTION")
        return 0 if report.is_clean else 2

    def _cmd_dead_letters(self, args: argparse.Namespace) -> int:
        """List money waiting on an operator."""
        with self._sessions()() as session:
            unallocated = self._payments(session).list_unallocated()

        print("Dead letters:")
        print("-" * 60)
        if not unallocated.dead_letters:
            print("  (none)")
        for dl in unallocated.dead_letters:
            print(
                f"  {dl.id}  intent={dl.intent_id}  {dl.amount}  "
                f"attempts={dl.attempts}  {dl.reason}"
            )

        print("\nUnattributed receipts:")
        print("-" * 60)
        if not unallocated.unattributed:
            print("  (none)")
        for receipt in unallocated.unattributed:
            print(
                f"  {receipt.id}  {receipt.provider} {receipt.external_reference}  "
                f"{receipt.amount} {receipt.currency or ''}  ref={receipt.account_reference!r}"
            )

        print(f"\nTotal unallocated: {unallocated.total:,.2f}")
        return 0

    def _cmd_config_check(self, args: argparse.Namespace) -> int:
        """Validate configuration."""
        try:
            config = self._config()
        except ValueError as exc:
            print(f"Invalid configuration: {exc}", file=sys.stderr)
            return 1

        print("Enabled providers: " + ", ".join(p.value for p in config.enabled_providers()))
        if args.production:
            issues = validate_production_config(config)
            if issues:
                print("\nProduction issues:")
                for issue in issues:
                    print(f"  - {issue}")
            if any(issue.startswith("CRITICAL") for issue in issues):
                return 1
        print("Configuration OK")
        return 0


def _report_dict(report: ReconciliationReport) -> dict[str, Any]:
    return {
        "generated_at": report.generated_at.isoformat(),
        "since": report.since.isoformat() if report.since else None,
        "intents_by_state": report.intents_by_state,
        "late_settled": report.late_settled,
        "confirmed_total": str(report.confirmed_total),
        "allocated_total": str(report.allocated_total),
        "reversed_total": str(report.reversed_total),
        "credit_total": str(report.credit_total),
        "flag_counts": report.flag_counts,
        "open_dead_letters": len(report.open_dead_letters),
        "open_unattributed": len(report.open_unattributed),
        "clean": report.is_clean,
    }


def main(args: list[str] | None = None) -> int:
    settings = get_settings()
    setup_logging(settings.log_level, json_format=settings.log_json)
    return PaymentsCli(settings=settings).run(args)


if __name__ == "__main__":
    sys.exit(main())
