"""Utility functions for payroll exports."""

import json
import logging
import os
import time
from datetime import date, datetime
from typing import Callable, TypeVar

T = TypeVar("T")

# File paths
CONFIG_FILE = "config.json"

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load config.json with organization, storage and secrets."""
    with open(path) as f:
        return json.load(f)


def validate_config(config: dict) -> list[str]:
    """Validate config structure and return list of error messages.

    Returns:
        Empty list if valid, otherwise list of error messages.
    """
    errors = []

    if not config.get("organization_id"):
        errors.append("Missing organization_id in config.json")

    if not config.get("data_file"):
        errors.append("Missing data_file in config.json")

    if "storage" in config:
        if not config["storage"].get("root"):
            errors.append("Missing storage.root")

    if "secrets" in config and not isinstance(config["secrets"], dict):
        errors.append("secrets must be an object of key/value pairs")

    return errors


def load_config_safe(path: str = CONFIG_FILE) -> dict | None:
    """Load config with user-friendly error messages.

    Returns:
        Config dict if valid, None if errors occurred.
    """
    if not os.path.exists(path):
        print(f"[!] ERROR: {path} not found!")
        print()
        print("    Create config.json based on config.example.json:")
        print("    $ cp config.example.json config.json")
        print("    $ nano config.json  # Fill in your organization and credentials")
        print()
        return None

    try:
        config = load_config(path)
    except json.JSONDecodeError as e:
        print(f"[!] ERROR: {path} is not valid JSON!")
        print(f"    Line {e.lineno}, column {e.colno}: {e.msg}")
        print()
        print("    Check for missing commas, quotes, or brackets.")
        return None

    errors = validate_config(config)
    if errors:
        print(f"[!] ERROR: {path} is incomplete:")
        for err in errors:
            print(f"    - {err}")
        print()
        print("    See config.example.json for the required structure.")
        return None

    return config


# Attributes every LogRecord has; anything else came in through extra={...}
_RECORD_KEYS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


class ContextFormatter(logging.Formatter):
    """Plain text line followed by the extra fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {k: v for k, v in vars(record).items() if k not in _RECORD_KEYS}
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        first, newline, rest = line.partition("\n")
        return f"{first} [{pairs}]{newline}{rest}"


def configure_logging(verbose: bool = False) -> None:
    """Send log records to stderr. Only the CLI calls this."""
    handler = logging.StreamHandler()
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, handlers=[handler])


def parse_date(value: str) -> date:
    """Parse YYYY-MM-DD (a trailing time part is ignored)."""
    return date.fromisoformat(value[:10])


def month_key(day: date) -> str:
    """Bucket key YYYY-MM for monthly aggregation."""
    return f"{day.year:04d}-{day.month:02d}"


def record_date_range(work_periods: list, absences: list) -> tuple[date | None, date | None]:
    """Earliest and latest calendar day touched by the given records."""
    start: date | None = None
    end: date | None = None

    for period in work_periods:
        period_start = period.start_time.date()
        period_end = (period.end_time or period.start_time).date()
        if start is None or period_start < start:
            start = period_start
        if end is None or period_end > end:
            end = period_end

    for absence in absences:
        if start is None or absence.start_date < start:
            start = absence.start_date
        if end is None or absence.end_date > end:
            end = absence.end_date

    return start, end


def iso_or_empty(value: date | datetime | None) -> str:
    return value.isoformat()[:10] if value else ""


def retry_call(
    operation: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute an operation with retries and exponential backoff.

    Args:
        operation: Callable to execute
        max_attempts: Maximum number of attempts
        delay: Delay in seconds before the second attempt
        backoff: Multiplier applied to the delay after every attempt
        retry_on: Exception types that trigger another attempt
        on_retry: Optional callback when retrying (attempt_num, exception)
        sleep: Sleep function, replaceable in tests

    Returns:
        Result of the operation. The last error is re-raised once all
        attempts are used up.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except retry_on as e:
            if attempt >= max_attempts:
                raise
            if on_retry:
                on_retry(attempt, e)
            sleep(delay * backoff ** (attempt - 1))
    raise ValueError("max_attempts must be at least 1")
