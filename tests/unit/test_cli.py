"""Tests for the pulse command line."""

from typer.testing import CliRunner

from pulse import __version__
from pulse.cli.main import app

runner = CliRunner()


class TestCronCommands:

    def test_next_occurrences(self):
        result = runner.invoke(
            app, ["cron", "next", "*/15 * * * *", "--count", "3", "--after", "2024-03-04T10:00:00"]
        )

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert lines[0] == "Every 15 minutes"
        assert lines[1:] == [
            "2024-03-04T10:15:00+00:00",
            "2024-03-04T10:30:00+00:00",
            "2024-03-04T10:45:00+00:00",
        ]

    def test_next_with_invalid_expression(self):
        result = runner.invoke(app, ["cron", "next", "not a cron"])

        assert result.exit_code == 1

    def test_next_with_invalid_timestamp(self):
        result = runner.invoke(app, ["cron", "next", "*/15 * * * *", "--after", "yesterday"])

        assert result.exit_code == 2

    def test_validate(self):
        valid = runner.invoke(app, ["cron", "validate", "0 6 * * *"])
        assert valid.exit_code == 0
        assert "Valid: Daily at 6 AM" in valid.output

        invalid = runner.invoke(app, ["cron", "validate", "0 25 * * *"])
        assert invalid.exit_code == 1

    def test_presets(self):
        result = runner.invoke(app, ["cron", "presets"])

        assert result.exit_code == 0
        assert "every-15-minutes" in result.output


def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output
