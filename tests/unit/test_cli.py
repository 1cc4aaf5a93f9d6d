"""Unit tests for the operator CLI.

Tests for authledger/cli.py - argument handling that needs no database.

Run with:
    pytest tests/unit/test_cli.py -v
"""

import pytest
from click.testing import CliRunner

from authledger import __version__
from authledger.cli import main


@pytest.mark.fast
class TestCli:
    """Tests for the click command group."""

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_commands_registered(self):
        assert {"serve", "init-db", "sweep", "grant-credits", "audit"} <= set(main.commands)

    def test_audit_rejects_unknown_event(self):
        result = CliRunner().invoke(main, ["audit", "--event", "bogus"])
        assert result.exit_code == 1
        assert "Unknown event type" in result.output

    def test_grant_credits_requires_positive_amount(self):
        result = CliRunner().invoke(main, ["grant-credits", "a@example.com", "0"])
        assert result.exit_code == 2
