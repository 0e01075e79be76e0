"""Centralized regex patterns for payroll exports."""

import re


class Patterns:
    """Regex patterns used throughout the export process."""

    # DATEV client number (Mandantennummer): 1-5 digits
    MANDANTENNUMMER = re.compile(r"^\d{1,5}$")

    # DATEV consultant number (Beraternummer): 1-7 digits
    BERATERNUMMER = re.compile(r"^\d{1,7}$")

    # Date format: YYYY-MM-DD
    DATE_FORMAT = re.compile(r"^\d{4}-\d{2}-\d{2}$")

    # Numeric employee id, sent to Personio as an integer
    NUMERIC_ID = re.compile(r"^\d+$")

    # SuccessFactors instance URL: https://api4.successfactors.com
    INSTANCE_URL = re.compile(r"^https://[^\s/]+(/[^\s]*)?$")

    # Minimal email shape for the email matching strategy
    EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
