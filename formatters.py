"""CSV file formatters for DATEV, Lexware and Sage payroll imports.

Each formatter is a table entry (id, name, version, kind, defaults). The
kind picks the validation rules and the CSV dialect from the tables at the
bottom of this module.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from mapping import EmployeeResolver, WageTypeResolver
from models import (
    AbsenceRecord,
    ExportMetadata,
    FileExportResult,
    ProviderKind,
    WageTypeMapping,
    WorkPeriodRecord,
)
from patterns import Patterns
from transformers import DAY, MONTH, Bucket, aggregate, iter_rows
from utils import iso_or_empty, record_date_range

logger = logging.getLogger(__name__)

# Work periods above this count are exported asynchronously
SYNC_THRESHOLD = 500

DELIMITER = ";"
LINE_END = "\r\n"
BOM = "\ufeff"
PERSONNEL_NUMBER_TYPES = ("employeeNumber", "employeeId")
SAGE_OUTPUT_FORMATS = ("datev_compatible", "sage_native")


# ============================================================================
# CSV helpers
# ============================================================================


def quote(value: str | None) -> str:
    """Wrap in double quotes and double any internal quote."""
    if not value:
        return '""'
    return '"' + value.replace('"', '""') + '"'


def format_decimal(value: float, separator: str = ".") -> str:
    """Two decimal places with the given separator."""
    return f"{value:.2f}".replace(".", separator)


def parse_decimal(text: str) -> float:
    """Inverse of format_decimal for either separator."""
    return float(text.strip('"').replace(",", "."))


def file_name(format_id: str, first_date, now: datetime) -> str:
    month = first_date.strftime("%Y-%m") if first_date else now.strftime("%Y-%m")
    return f"{format_id}_{month}_{now.strftime('%Y%m%d_%H%M%S')}.csv"


# ============================================================================
# Config validation
# ============================================================================


def _check_personnel_number_type(config: dict, errors: list[str]) -> None:
    if config.get("personnelNumberType") not in PERSONNEL_NUMBER_TYPES:
        errors.append("Personnel number type must be 'employeeNumber' or 'employeeId'")


def _validate_datev(config: dict) -> list[str]:
    errors = []

    mandant = config.get("mandantennummer")
    if not mandant:
        errors.append("Mandantennummer (client number) is required")
    elif not Patterns.MANDANTENNUMMER.match(str(mandant)):
        errors.append("Mandantennummer must be 1-5 digits")

    berater = config.get("beraternummer")
    if not berater:
        errors.append("Beraternummer (consultant number) is required")
    elif not Patterns.BERATERNUMMER.match(str(berater)):
        errors.append("Beraternummer must be 1-7 digits")

    _check_personnel_number_type(config, errors)
    return errors


def _validate_lexware(config: dict) -> list[str]:
    errors: list[str] = []
    _check_personnel_number_type(config, errors)
    for key in ("includeStunden", "includeStundensatz", "includeZeroHours"):
        if key in config and not isinstance(config[key], bool):
            errors.append(f"{key} must be true or false")
    return errors


def _validate_sage(config: dict) -> list[str]:
    errors: list[str] = []
    _check_personnel_number_type(config, errors)
    if config.get("outputFormat") not in SAGE_OUTPUT_FORMATS:
        errors.append("Output format must be 'datev_compatible' or 'sage_native'")
    return errors


# ============================================================================
# Dialects
# ============================================================================


@dataclass
class Dialect:
    """How one vendor wants its CSV laid out."""

    granularity: str
    header: Callable[[dict], list[str]]
    row: Callable[[str, str, str, Bucket, dict], list[str]]
    bom: bool = False


DATEV_COLUMNS = ["Personalnummer", "Lohnart", "Betrag", "Datum", "Bemerkung"]


def _datev_row(personnel: str, day: str, code: str, bucket: Bucket, config: dict) -> list[str]:
    return [quote(personnel), quote(code), format_decimal(bucket.hours), quote(day), quote(bucket.note)]


def _sage_row(personnel: str, day: str, code: str, bucket: Bucket, config: dict) -> list[str]:
    separator = "," if config.get("outputFormat") == "sage_native" else "."
    # Amount is quoted too, a comma decimal would otherwise be ambiguous
    return [
        quote(personnel),
        quote(code),
        quote(format_decimal(bucket.hours, separator)),
        quote(day),
        quote(bucket.note),
    ]


def _lexware_header(config: dict) -> list[str]:
    columns = ["Jahr", "Monat", "Personalnummer", "Lohnartennummer", "Wert"]
    if config.get("includeStunden"):
        columns.append("Stunden")
    if config.get("includeStundensatz"):
        columns.append("Stundensatz")
    return columns


def _lexware_row(personnel: str, month: str, code: str, bucket: Bucket, config: dict) -> list[str]:
    year, month_number = month.split("-")
    fields = [
        quote(year),
        quote(month_number),
        quote(personnel),
        quote(code),
        format_decimal(bucket.hours, ","),
    ]
    if config.get("includeStunden"):
        fields.append(format_decimal(bucket.hours, ","))
    if config.get("includeStundensatz"):
        # No rates are tracked, the column stays empty
        fields.append("")
    return fields


VALIDATORS: dict[str, Callable[[dict], list[str]]] = {
    ProviderKind.DATEV_LOHN: _validate_datev,
    ProviderKind.LEXWARE_LOHN: _validate_lexware,
    ProviderKind.SAGE_LOHN: _validate_sage,
}

DIALECTS: dict[str, Dialect] = {
    ProviderKind.DATEV_LOHN: Dialect(DAY, lambda config: DATEV_COLUMNS, _datev_row),
    ProviderKind.LEXWARE_LOHN: Dialect(MONTH, _lexware_header, _lexware_row, bom=True),
    ProviderKind.SAGE_LOHN: Dialect(DAY, lambda config: DATEV_COLUMNS, _sage_row),
}

DEFAULT_DATEV_CONFIG = {
    "personnelNumberType": "employeeNumber",
    "includeZeroHours": False,
}

DEFAULT_LEXWARE_CONFIG = {
    "personnelNumberType": "employeeNumber",
    "includeStunden": True,
    "includeStundensatz": False,
    "includeZeroHours": False,
}

DEFAULT_SAGE_CONFIG = {
    "personnelNumberType": "employeeNumber",
    "outputFormat": "datev_compatible",
    "includeZeroHours": False,
}


# ============================================================================
# Formatter
# ============================================================================


@dataclass
class Formatter:
    """A registered file format."""

    id: str
    name: str
    version: str
    kind: str
    default_config: dict = field(default_factory=dict)
    sync_threshold: int = SYNC_THRESHOLD

    family = "formatter"

    def merged_config(self, config: dict) -> dict:
        return {**self.default_config, **(config or {})}

    def validate_config(self, config: dict) -> list[str]:
        """Return error messages; empty when the config is usable."""
        return VALIDATORS[self.kind](self.merged_config(config))

    def get_sync_threshold(self) -> int:
        return self.sync_threshold

    def render(
        self,
        work_periods: list[WorkPeriodRecord],
        absences: list[AbsenceRecord],
        mappings: list[WageTypeMapping],
        config: dict,
    ) -> str:
        """CSV text without BOM. Identical input gives identical output."""
        config = self.merged_config(config)
        dialect = DIALECTS[self.kind]
        wage_types = WageTypeResolver(mappings, self.kind)
        employees = EmployeeResolver(config["personnelNumberType"], fallback_to_employee_id=True)

        data = aggregate(work_periods, absences, wage_types, employees, dialect.granularity)
        lines = [DELIMITER.join(quote(column) for column in dialect.header(config))]
        for personnel, key, code, bucket in iter_rows(data):
            if bucket.hours > 0 or config.get("includeZeroHours"):
                lines.append(DELIMITER.join(dialect.row(personnel, key, code, bucket, config)))
        return LINE_END.join(lines)

    def transform(
        self,
        work_periods: list[WorkPeriodRecord],
        absences: list[AbsenceRecord],
        mappings: list[WageTypeMapping],
        config: dict,
        now: datetime | None = None,
    ) -> FileExportResult:
        logger.info(
            "Transforming to %s format",
            self.name,
            extra={"work_period_count": len(work_periods), "absence_count": len(absences)},
        )
        text = self.render(work_periods, absences, mappings, config)
        if DIALECTS[self.kind].bom:
            text = BOM + text

        employees = {p.employee_id for p in work_periods} | {a.employee_id for a in absences}
        start, end = record_date_range(work_periods, absences)
        name = file_name(self.id, start, now or datetime.now())

        logger.info(
            "%s export generated",
            self.name,
            extra={"line_count": text.count(LINE_END) + 1, "employee_count": len(employees), "file_name": name},
        )

        return FileExportResult(
            file_name=name,
            content=text.encode("utf-8"),
            mime_type="text/csv",
            encoding="utf-8",
            metadata=ExportMetadata(
                work_period_count=len(work_periods),
                employee_count=len(employees),
                date_range_start=iso_or_empty(start),
                date_range_end=iso_or_empty(end),
            ),
        )


def default_formatters() -> list[Formatter]:
    return [
        Formatter(ProviderKind.DATEV_LOHN, "DATEV Lohn & Gehalt", "2024.1", ProviderKind.DATEV_LOHN, dict(DEFAULT_DATEV_CONFIG)),
        Formatter(ProviderKind.LEXWARE_LOHN, "Lexware lohn+gehalt", "2024.1", ProviderKind.LEXWARE_LOHN, dict(DEFAULT_LEXWARE_CONFIG)),
        Formatter(ProviderKind.SAGE_LOHN, "Sage Lohn", "2024.1", ProviderKind.SAGE_LOHN, dict(DEFAULT_SAGE_CONFIG)),
    ]
