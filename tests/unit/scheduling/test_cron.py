"""Unit tests for cron evaluation."""

from datetime import datetime, timezone

import pytest

from pulse.exceptions import InvalidExpression
from pulse.scheduling.cron import (
    CronEvaluator,
    validate_cron_expression,
    get_next_run_time
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestCronEvaluator:
    """Test CronEvaluator functionality."""

    def setup_method(self):
        self.evaluator = CronEvaluator()

    def test_validate_basic_cron_expressions(self):
        valid_expressions = [
            "0 9 * * *",      # Daily at 9 AM
            "0 */2 * * *",    # Every 2 hours
            "15 14 1 * *",    # 2:15 PM on 1st of every month
            "0 22 * * 1-5",   # 10 PM on weekdays
            "*/15 * * * *",   # Every 15 minutes
            "0 9,17 * * *",   # Twice daily
        ]

        for expr in valid_expressions:
            self.evaluator.validate(expr)

    def test_validate_named_expressions_and_presets(self):
        for expr in ["@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly"]:
            self.evaluator.validate(expr)

        assert self.evaluator.resolve("@hourly") == "0 * * * *"
        assert self.evaluator.resolve("daily-6am") == "0 6 * * *"
        assert self.evaluator.resolve("  */5   *  * * *  ") == "*/5 * * * *"

    def test_invalid_cron_expressions(self):
        invalid_expressions = [
            "",
            "   ",
            "invalid",
            "60 * * * *",       # Invalid minute
            "* 25 * * *",       # Invalid hour
            "* * 32 * *",       # Invalid day
            "* * * 13 *",       # Invalid month
            "* * * *",          # Too few fields
            "0 * * * * *",      # Seconds field is not supported
            "@every-minute",    # Unknown macro
        ]

        for expr in invalid_expressions:
            with pytest.raises(InvalidExpression):
                self.evaluator.validate(expr)

    def test_expression_length_limit(self):
        expr = "0 " + ",".join(["1"] * 60) + " * * *"
        assert len(expr) > 100

        with pytest.raises(InvalidExpression) as exc_info:
            self.evaluator.validate(expr)
        assert "100 characters" in exc_info.value.message
        assert exc_info.value.error_code == "invalid_expression"

    def test_next_occurrence_is_strictly_after_reference(self):
        assert self.evaluator.next_occurrence("*/15 * * * *", utc(2024, 3, 4, 10, 0)) == utc(2024, 3, 4, 10, 15)
        assert self.evaluator.next_occurrence("*/15 * * * *", utc(2024, 3, 4, 10, 7, 30)) == utc(2024, 3, 4, 10, 15)
        assert self.evaluator.next_occurrence("*/15 * * * *", utc(2024, 3, 4, 10, 15, 2)) == utc(2024, 3, 4, 10, 30)

    def test_next_occurrence_rolls_over_day_and_month(self):
        assert self.evaluator.next_occurrence("0 9 * * *", utc(2024, 3, 4, 10, 0)) == utc(2024, 3, 5, 9, 0)
        # April has no 31st
        assert self.evaluator.next_occurrence("0 0 31 * *", utc(2024, 4, 1)) == utc(2024, 5, 31)
        assert self.evaluator.next_occurrence("0 0 1 1 *", utc(2024, 12, 31, 23, 59)) == utc(2025, 1, 1)

    def test_next_occurrence_weekday(self):
        # 2024-03-04 is a Monday
        assert self.evaluator.next_occurrence("0 0 * * 5", utc(2024, 3, 4, 10, 0)) == utc(2024, 3, 8, 0, 0)
        assert self.evaluator.next_occurrence("0 22 * * 1-5", utc(2024, 3, 8, 22, 0)) == utc(2024, 3, 11, 22, 0)

    def test_next_occurrence_returns_aware_utc(self):
        result = self.evaluator.next_occurrence("@hourly", utc(2024, 3, 4, 10, 0))
        assert result.tzinfo is not None
        assert result.utcoffset().total_seconds() == 0
        assert result == utc(2024, 3, 4, 11, 0)

    def test_naive_reference_is_treated_as_utc(self):
        naive = datetime(2024, 3, 4, 10, 0)
        assert self.evaluator.next_occurrence("*/15 * * * *", naive) == utc(2024, 3, 4, 10, 15)

    def test_next_occurrences(self):
        occurrences = self.evaluator.next_occurrences("*/15 * * * *", utc(2024, 3, 4, 10, 0), count=3)
        assert occurrences == [
            utc(2024, 3, 4, 10, 15),
            utc(2024, 3, 4, 10, 30),
            utc(2024, 3, 4, 10, 45),
        ]
        assert self.evaluator.next_occurrences("*/15 * * * *", utc(2024, 3, 4, 10, 0), count=0) == []

    def test_is_due(self):
        last_run = utc(2024, 3, 4, 10, 0)

        assert not self.evaluator.is_due("*/15 * * * *", last_run, utc(2024, 3, 4, 10, 14, 59))
        assert self.evaluator.is_due("*/15 * * * *", last_run, utc(2024, 3, 4, 10, 15))
        assert self.evaluator.is_due("*/15 * * * *", last_run, utc(2024, 3, 4, 11, 40))

    def test_is_due_without_previous_run_matches_minute(self):
        assert self.evaluator.is_due("*/15 * * * *", None, utc(2024, 3, 4, 10, 15, 30))
        assert not self.evaluator.is_due("*/15 * * * *", None, utc(2024, 3, 4, 10, 16))

    def test_describe_presets(self):
        assert self.evaluator.describe("*/15 * * * *") == "Every 15 minutes"
        assert self.evaluator.describe("0 9,17 * * *") == "Twice daily (9 AM and 5 PM)"
        assert self.evaluator.describe("@hourly") == "Every hour"
        assert self.evaluator.describe("weekly-monday") == "Weekly on Monday"

    def test_describe_simple_patterns(self):
        assert self.evaluator.describe("*/10 * * * *") == "Every 10 minutes"
        assert self.evaluator.describe("7 */2 * * *") == "Every 2 hours at minute 7"
        assert self.evaluator.describe("20 * * * *") == "Every hour at minute 20"
        assert self.evaluator.describe("30 8 * * *") == "Daily at 08:30 UTC"
        assert self.evaluator.describe("0 8 * * 5") == "Weekly on Friday at 08:00 UTC"
        assert self.evaluator.describe("0 3 15 * *") == "Monthly on day 15 at 03:00 UTC"

    def test_describe_custom(self):
        assert self.evaluator.describe("5 4 * 6 *") == "Custom schedule: 5 4 * 6 *"

    def test_describe_invalid_raises(self):
        with pytest.raises(InvalidExpression):
            self.evaluator.describe("not a cron")

    def test_validate_expression_reports_next_run(self):
        result = self.evaluator.validate_expression("*/15 * * * *", utc(2024, 3, 4, 10, 0))

        assert result.is_valid
        assert result.description == "Every 15 minutes"
        assert result.next_run_at == utc(2024, 3, 4, 10, 15)
        assert result.error_message is None

    def test_validate_expression_reports_error(self):
        result = self.evaluator.validate_expression("61 * * * *")

        assert not result.is_valid
        assert result.next_run_at is None
        assert "61 * * * *" in result.error_message

    def test_presets(self):
        presets = self.evaluator.presets()
        names = [p.name for p in presets]

        assert "every-15-minutes" in names
        assert "twice-daily" in names
        for preset in presets:
            assert self.evaluator.resolve(preset.expression) == preset.expression

    def test_cache(self):
        self.evaluator.resolve("*/5 * * * *")
        assert "*/5 * * * *" in self.evaluator._cache

        self.evaluator.clear_cache()
        assert self.evaluator._cache == {}


class TestConvenienceFunctions:

    def test_validate_cron_expression(self):
        validate_cron_expression("0 9 * * *")

        with pytest.raises(InvalidExpression):
            validate_cron_expression("0 9 * *")

    def test_get_next_run_time(self):
        assert get_next_run_time("0 9 * * *", utc(2024, 3, 4, 8, 0)) == utc(2024, 3, 4, 9, 0)
