"""Tests for the command-line interface."""

import json
import tempfile

from replyguard.cli import main


class TestCLI:
    """Test CLI commands against a temporary database."""

    def setup_method(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db = f"{self.tmpdir.name}/replyguard.db"

    def teardown_method(self):
        self.tmpdir.cleanup()

    def run(self, capsys, *args):
        code = main(["--db", self.db, *args])
        return code, capsys.readouterr()

    def test_no_command(self, capsys):
        """Running without a command prints help and fails."""
        assert main([]) == 1

    def test_init(self, capsys):
        """init creates the database."""
        code, out = self.run(capsys, "init")
        assert code == 0
        assert "Initialized guardrail store" in out.out

    def test_config_set_and_get(self, capsys):
        """Config changes are persisted."""
        code, _ = self.run(capsys, "config-set", "owner_1", "--require-approval", "--max-per-day", "3")
        assert code == 0

        code, out = self.run(capsys, "config-get", "owner_1")
        data = json.loads(out.out)
        assert data["require_approval"] is True
        assert data["max_auto_actions_per_day"] == 3
        assert data["features_disabled"] is False

    def test_config_set_invalid(self, capsys):
        """Invalid values exit with an error."""
        code, out = self.run(capsys, "config-set", "owner_1", "--escalation-threshold", "2.0")
        assert code == 1
        assert "Error" in out.err

    def test_record_cost_and_sweep(self, capsys):
        """A sweep over an exhausted budget disables features."""
        code, out = self.run(capsys, "record-cost", "owner_1", "600", "--budget-cents", "500")
        assert code == 0
        assert json.loads(out.out)["used_percent"] == 120.0

        code, out = self.run(capsys, "sweep", "--no-notify")
        assert code == 0
        assert "Features disabled: 1" in out.out

        _, out = self.run(capsys, "config-get", "owner_1")
        data = json.loads(out.out)
        assert data["features_disabled"] is True
        assert data["disabled_reason"] == "budget_exceeded"

        _, out = self.run(capsys, "enable-features", "owner_1")
        assert "re-enabled" in out.out

    def test_rate_status(self, capsys):
        """rate-status prints usage as JSON."""
        code, out = self.run(capsys, "rate-status", "owner_1", "auto_response")
        assert code == 0
        data = json.loads(out.out)
        assert data["hourly_count"] == 0
        assert "hourly" in data["reset_times"]

    def test_rate_status_unknown_operation(self, capsys):
        """Unknown operations exit with an error."""
        code, out = self.run(capsys, "rate-status", "owner_1", "teleport")
        assert code == 1
        assert "Unknown operation" in out.err
