"""Turn normalized time records into provider input.

File formats get aggregated buckets (employee -> day or month -> code).
API connectors get one request per source record, each tagged with the
source record id as its external reference.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Iterator

from errors import MappingGapError
from mapping import EmployeeResolver, WageTypeResolver
from models import AbsenceRecord, RecordError, RecordType, SkippedRecord, WorkPeriodRecord
from utils import month_key

logger = logging.getLogger(__name__)

# Absences are booked as a full working day
FULL_DAY_HOURS = 8.0

DAY = "day"
MONTH = "month"


# ============================================================================
# File path: aggregation
# ============================================================================


@dataclass
class Bucket:
    hours: float = 0.0
    note: str = ""


# personnel number -> bucket key -> wage type code -> Bucket
Aggregate = dict[str, dict[str, dict[str, Bucket]]]


def bucket_key(day: date, granularity: str) -> str:
    if granularity == MONTH:
        return month_key(day)
    return day.isoformat()


def _add(result: Aggregate, personnel: str, key: str, code: str, hours: float, note: str) -> None:
    bucket = result.setdefault(personnel, {}).setdefault(key, {}).setdefault(code, Bucket())
    bucket.hours += hours
    bucket.note = note or bucket.note


def aggregate(
    work_periods: list[WorkPeriodRecord],
    absences: list[AbsenceRecord],
    wage_types: WageTypeResolver,
    employees: EmployeeResolver,
    granularity: str = DAY,
) -> Aggregate:
    """Sum hours per employee, bucket and wage type code."""
    result: Aggregate = {}

    for period in work_periods:
        if not period.is_exportable:
            continue
        personnel = str(employees.resolve(period))
        code = wage_types.work_code(period.work_category_id)
        key = bucket_key(period.start_time.date(), granularity)
        _add(result, personnel, key, code, period.hours, wage_types.work_label(period))

    for absence in absences:
        code = wage_types.absence_code(absence.absence_category_id)
        if code is None:
            logger.debug(
                "No mapping for absence category, skipping",
                extra={"absence_id": absence.id, "category_id": absence.absence_category_id},
            )
            continue
        personnel = str(employees.resolve(absence))
        note = wage_types.absence_label(absence)
        for day in absence.days():
            _add(result, personnel, bucket_key(day, granularity), code, FULL_DAY_HOURS, note)

    return result


def iter_rows(data: Aggregate) -> Iterator[tuple[str, str, str, Bucket]]:
    """Rows sorted by personnel number, bucket key, then code."""
    for personnel in sorted(data):
        for key in sorted(data[personnel]):
            codes = data[personnel][key]
            for code in sorted(codes):
                yield personnel, key, code, codes[code]


# ============================================================================
# API path: one request per source record
# ============================================================================


@dataclass
class AttendanceRequest:
    """Provider-neutral attendance push; clients encode it for the wire."""

    external_reference: str
    employee_id: str
    employee: str | int
    date: date
    start: datetime
    end: datetime
    hours: float
    code: str | None = None
    comment: str | None = None


@dataclass
class AbsenceRequest:
    external_reference: str
    employee_id: str
    employee: str | int
    start_date: date
    end_date: date
    days: int
    code: str
    comment: str | None = None


@dataclass
class PreparedExport:
    """Requests to send plus records settled before any call is made."""

    attendances: list[AttendanceRequest] = field(default_factory=list)
    absences: list[AbsenceRequest] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)
    unresolved: list[RecordError] = field(default_factory=list)


def _comment(*parts: str | None) -> str | None:
    present = [p for p in parts if p]
    return " - ".join(present) if present else None


def _unresolved(record_id: str, record_type: str, employee_id: str) -> RecordError:
    return RecordError(
        record_id=record_id,
        record_type=record_type,
        employee_id=employee_id,
        error_message="Cannot determine employee identifier",
        is_retryable=False,
        attempt_count=0,
    )


def prepare_requests(
    work_periods: list[WorkPeriodRecord],
    absences: list[AbsenceRecord],
    wage_types: WageTypeResolver,
    employees: EmployeeResolver,
    include_zero_hours: bool = False,
    check_absence_code: Callable[[str], str | None] | None = None,
) -> PreparedExport:
    """Build one request per exportable record.

    check_absence_code may reject a mapped code (returning a reason), which
    skips the absence like a missing mapping does.
    """
    prepared = PreparedExport()

    for period in work_periods:
        if not period.is_exportable:
            prepared.skipped.append(
                SkippedRecord(period.id, RecordType.ATTENDANCE, period.employee_id, "Work period is not completed")
            )
            continue
        if period.duration_minutes == 0 and not include_zero_hours:
            prepared.skipped.append(
                SkippedRecord(period.id, RecordType.ATTENDANCE, period.employee_id, "Zero-hour work period")
            )
            continue

        employee = employees.resolve(period)
        if employee is None:
            prepared.unresolved.append(_unresolved(period.id, RecordType.ATTENDANCE, period.employee_id))
            continue

        prepared.attendances.append(
            AttendanceRequest(
                external_reference=period.id,
                employee_id=period.employee_id,
                employee=employee,
                date=period.start_time.date(),
                start=period.start_time,
                end=period.end_time,
                hours=round(period.hours, 2),
                code=wage_types.work_code(period.work_category_id),
                comment=_comment(period.work_category_name, period.project_name),
            )
        )

    for absence in absences:
        try:
            code = wage_types.require_absence_code(absence.absence_category_id)
        except MappingGapError as e:
            logger.warning(
                "No time-off type mapping for absence category, skipping",
                extra={"absence_id": absence.id, "category_id": absence.absence_category_id},
            )
            prepared.skipped.append(
                SkippedRecord(absence.id, RecordType.ABSENCE, absence.employee_id, str(e))
            )
            continue

        reason = check_absence_code(code) if check_absence_code else None
        if reason:
            logger.warning(
                "Rejected time-off type code, skipping",
                extra={"absence_id": absence.id, "code": code},
            )
            prepared.skipped.append(
                SkippedRecord(absence.id, RecordType.ABSENCE, absence.employee_id, reason)
            )
            continue

        employee = employees.resolve(absence)
        if employee is None:
            prepared.unresolved.append(_unresolved(absence.id, RecordType.ABSENCE, absence.employee_id))
            continue

        prepared.absences.append(
            AbsenceRequest(
                external_reference=absence.id,
                employee_id=absence.employee_id,
                employee=employee,
                start_date=absence.start_date,
                end_date=absence.end_date,
                days=absence.day_count,
                code=code,
                comment=absence.absence_category_name or None,
            )
        )

    return prepared
