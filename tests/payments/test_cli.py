"""Tests for the loan payments CLI."""

import json
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from loan_engine.payments.cli import PaymentsCli, parse_datetime
from loan_engine.payments.model import Provider


@pytest.fixture
def cli(session_factory, payments_config) -> PaymentsCli:
    return PaymentsCli(session_factory=session_factory, payments_config=payments_config)


@pytest.fixture
def parked_receipt(payments, provider_api, clock):
    """An unregistered C2B payment nobody can attribute."""
    result = payments.handle_callback(
        Provider.MPESA,
        provider_api.c2b_confirmation("QKA7XY12Z9", 1500, "NOT-A-LOAN", clock()),
    )
    return result.outcome.unattributed_receipt_id


class TestParseDatetime:
    def test_zulu_suffix(self):
        assert parse_datetime("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestCommands:
    """Test each CLI command against a shared in-memory database."""

    def test_no_command_prints_help(self, cli, capsys):
        assert cli.run([]) == 1
        assert "Loan payments operational tools" in capsys.readouterr().out

    def test_sweep_once(self, cli, capsys):
        assert cli.run(["sweep", "--once"]) == 0

        out = capsys.readouterr().out
        assert "polled: 0" in out
        assert "expired: 0" in out

    def test_report_clean(self, cli, capsys):
        assert cli.run(["report"]) == 0

        out = capsys.readouterr().out
        assert "Reconciliation Report" in out
        assert "Overall: CLEAN" in out

    def test_report_needs_attention(self, cli, parked_receipt, capsys):
        assert cli.run(["report"]) == 2
        assert "Open unattributed receipts: 1" in capsys.readouterr().out

    def test_report_json(self, cli, parked_receipt, capsys):
        assert cli.run(["report", "--json", "--since", "2026-01-01T00:00:00Z"]) == 2

        data = json.loads(capsys.readouterr().out)
        assert data["since"] == "2026-01-01T00:00:00+00:00"
        assert data["open_unattributed"] == 1
        assert data["clean"] is False
        assert data["flag_counts"] == {"UNATTRIBUTED": 1}

    def test_dead_letters_lists_parked_money(self, cli, parked_receipt, capsys):
        assert cli.run(["dead-letters"]) == 0

        out = capsys.readouterr().out
        assert str(parked_receipt) in out
        assert "QKA7XY12Z9" in out
        assert "ref='NOT-A-LOAN'" in out

    def test_dead_letters_total(self, cli, parked_receipt, capsys):
        assert cli.run(["dead-letters"]) == 0
        assert "Total unallocated: 1,500.00" in capsys.readouterr().out

    def test_dead_letters_empty(self, cli, capsys):
        assert cli.run(["dead-letters"]) == 0
        assert capsys.readouterr().out.count("(none)") == 2


class TestConfigCheck:
    """Test configuration checks."""

    def test_sandbox_config(self, cli, capsys):
        assert cli.run(["config-check"]) == 0

        out = capsys.readouterr().out
        assert "Enabled providers: MPESA, AIRTEL, BANK" in out
        assert "Configuration OK" in out

    def test_production_warnings_do_not_fail(self, cli, capsys):
        assert cli.run(["config-check", "--production"]) == 0
        assert "WARNING: M-Pesa is using the sandbox environment" in capsys.readouterr().out

    def test_production_critical_fails(self, session_factory, payments_config, capsys):
        config = replace(
            payments_config,
            mpesa=replace(payments_config.mpesa, callback_url="http://loans.example.com/cb"),
        )
        cli = PaymentsCli(session_factory=session_factory, payments_config=config)

        assert cli.run(["config-check", "--production"]) == 1
        assert "CRITICAL" in capsys.readouterr().out

    def test_invalid_settings(self, session_factory, make_settings, capsys):
        cli = PaymentsCli(settings=make_settings(), session_factory=session_factory)

        assert cli.run(["config-check"]) == 1
        assert "Invalid configuration" in capsys.readouterr().err
