"""Cron expression evaluation in UTC.

This module evaluates standard 5-field cron expressions (lists, ranges and
steps) plus named presets. All instants are computed in UTC; naive datetimes
are interpreted as UTC. Parse failures surface as InvalidExpression so that
callers can reject bad input at edit time.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from croniter import croniter
from croniter.croniter import CroniterError

from ..exceptions import InvalidExpression
from .models import CronPreset, CronValidation, ensure_utc


logger = logging.getLogger(__name__)


MAX_EXPRESSION_LENGTH = 100

_WEEKDAYS = {
    "0": "Sunday", "1": "Monday", "2": "Tuesday", "3": "Wednesday",
    "4": "Thursday", "5": "Friday", "6": "Saturday", "7": "Sunday",
}


class CronEvaluator:
    """Stateless evaluator for cron expressions."""

    # Named cron expressions
    NAMED_EXPRESSIONS = {
        '@yearly': '0 0 1 1 *',
        '@annually': '0 0 1 1 *',
        '@monthly': '0 0 1 * *',
        '@weekly': '0 0 * * 0',
        '@daily': '0 0 * * *',
        '@midnight': '0 0 * * *',
        '@hourly': '0 * * * *',
    }

    # Presets offered when a user configures a recurring check
    PRESETS = {
        'every-5-minutes': ('Every 5 minutes', '*/5 * * * *'),
        'every-15-minutes': ('Every 15 minutes', '*/15 * * * *'),
        'every-30-minutes': ('Every 30 minutes', '*/30 * * * *'),
        'hourly': ('Every hour', '0 * * * *'),
        'every-6-hours': ('Every 6 hours', '0 */6 * * *'),
        'twice-daily': ('Twice daily (9 AM and 5 PM)', '0 9,17 * * *'),
        'daily': ('Daily at midnight', '0 0 * * *'),
        'daily-6am': ('Daily at 6 AM', '0 6 * * *'),
        'weekly-monday': ('Weekly on Monday', '0 0 * * 1'),
        'monthly': ('Monthly on the 1st', '0 0 1 * *'),
    }

    def __init__(self):
        self._cache: Dict[str, str] = {}

    def resolve(self, cron_expr: str) -> str:
        """Compile a cron expression or preset name to its 5-field form.

        Args:
            cron_expr: Raw expression or preset name

        Returns:
            Equivalent standard 5-field expression

        Raises:
            InvalidExpression: If the expression cannot be parsed
        """
        if cron_expr is None:
            raise InvalidExpression("", "expression is required")

        if cron_expr in self._cache:
            return self._cache[cron_expr]

        expr = cron_expr.strip()
        if not expr:
            raise InvalidExpression(cron_expr, "expression is required")
        if len(expr) > MAX_EXPRESSION_LENGTH:
            raise InvalidExpression(
                cron_expr, f"expression exceeds {MAX_EXPRESSION_LENGTH} characters"
            )

        key = expr.lower()
        if key in self.NAMED_EXPRESSIONS:
            expr = self.NAMED_EXPRESSIONS[key]
        elif key in self.PRESETS:
            expr = self.PRESETS[key][1]

        fields = expr.split()
        if len(fields) != 5:
            raise InvalidExpression(
                cron_expr, f"expected 5 fields, got {len(fields)}"
            )
        if not croniter.is_valid(expr):
            raise InvalidExpression(cron_expr, "field values out of range or malformed")

        resolved = " ".join(fields)
        self._cache[cron_expr] = resolved
        return resolved

    def validate(self, cron_expr: str) -> None:
        """Validate a cron expression.

        Raises:
            InvalidExpression: If expression is invalid
        """
        self.resolve(cron_expr)

    def next_occurrence(self, cron_expr: str, after: Optional[datetime] = None) -> datetime:
        """Calculate the first qualifying instant strictly after a reference time.

        Args:
            cron_expr: Cron expression or preset name
            after: Reference instant (default: now)

        Returns:
            Next qualifying instant as an aware UTC datetime

        Raises:
            InvalidExpression: If the expression cannot be parsed or evaluated
        """
        expr = self.resolve(cron_expr)
        reference = ensure_utc(after) if after is not None else datetime.now(timezone.utc)

        try:
            next_run = croniter(expr, reference).get_next(datetime)
        except CroniterError as e:
            raise InvalidExpression(cron_expr, str(e))

        return ensure_utc(next_run)

    def next_occurrences(
        self,
        cron_expr: str,
        after: Optional[datetime] = None,
        count: int = 5
    ) -> List[datetime]:
        """Return the next `count` qualifying instants after a reference time."""
        results = []
        current = after
        for _ in range(max(count, 0)):
            current = self.next_occurrence(cron_expr, current)
            results.append(current)
        return results

    def is_due(
        self,
        cron_expr: str,
        last_run: Optional[datetime],
        now: Optional[datetime] = None
    ) -> bool:
        """Check whether an occurrence falls in the window (last_run, now].

        With no previous run the schedule is due only when `now` itself
        qualifies (to minute precision).
        """
        expr = self.resolve(cron_expr)
        now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)

        if last_run is None:
            try:
                return croniter.match(expr, now)
            except CroniterError as e:
                raise InvalidExpression(cron_expr, str(e))

        return self.next_occurrence(expr, last_run) <= now

    def describe(self, cron_expr: str) -> str:
        """Produce a short human-readable description of an expression."""
        key = cron_expr.strip().lower() if cron_expr else ""
        if key in self.PRESETS:
            return self.PRESETS[key][0]

        expr = self.resolve(cron_expr)
        for label, preset_expr in self.PRESETS.values():
            if preset_expr == expr:
                return label

        minute, hour, day, month, weekday = expr.split()

        if minute.startswith('*/') and hour == '*' and day == '*' and month == '*' and weekday == '*':
            return f"Every {minute[2:]} minutes"
        if minute.isdigit() and hour.startswith('*/') and day == '*' and month == '*' and weekday == '*':
            return f"Every {hour[2:]} hours at minute {int(minute)}"
        if minute.isdigit() and hour == '*' and day == '*' and month == '*' and weekday == '*':
            return f"Every hour at minute {int(minute)}"
        if minute.isdigit() and hour.isdigit():
            at = f"{int(hour):02d}:{int(minute):02d} UTC"
            if day == '*' and month == '*' and weekday == '*':
                return f"Daily at {at}"
            if day == '*' and month == '*' and weekday in _WEEKDAYS:
                return f"Weekly on {_WEEKDAYS[weekday]} at {at}"
            if day.isdigit() and month == '*' and weekday == '*':
                return f"Monthly on day {int(day)} at {at}"

        return f"Custom schedule: {expr}"

    def validate_expression(
        self,
        cron_expr: str,
        now: Optional[datetime] = None
    ) -> CronValidation:
        """Validate an expression and report its description and next run time."""
        try:
            next_run = self.next_occurrence(cron_expr, now)
        except InvalidExpression as e:
            return CronValidation(is_valid=False, error_message=e.message)

        return CronValidation(
            is_valid=True,
            description=self.describe(cron_expr),
            next_run_at=next_run,
        )

    def presets(self) -> List[CronPreset]:
        """List the named presets offered to users."""
        return [
            CronPreset(name=name, label=label, expression=expr)
            for name, (label, expr) in self.PRESETS.items()
        ]

    def clear_cache(self) -> None:
        """Clear the cron expression resolution cache."""
        self._cache.clear()
        logger.debug("Cleared cron expression cache")


def validate_cron_expression(cron_expr: str) -> None:
    """Convenience function to validate a cron expression.

    Raises:
        InvalidExpression: If expression is invalid
    """
    CronEvaluator().validate(cron_expr)


def get_next_run_time(cron_expr: str, after: Optional[datetime] = None) -> datetime:
    """Convenience function to get the next run time in UTC."""
    return CronEvaluator().next_occurrence(cron_expr, after)
