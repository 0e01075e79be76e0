"""Data models for payroll exports."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal


class ProviderKind:
    """Installed providers. The value doubles as the format id."""

    DATEV_LOHN = "datev_lohn"
    LEXWARE_LOHN = "lexware_lohn"
    SAGE_LOHN = "sage_lohn"
    PERSONIO = "personio"
    SUCCESSFACTORS = "successfactors_api"


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class SyncStatus:
    SYNCED = "synced"
    FAILED = "failed"
    SKIPPED = "skipped"


class RecordType:
    ATTENDANCE = "attendance"
    ABSENCE = "absence"


SPECIAL_WAGE_CATEGORIES = ("overtime", "holiday_compensation", "overtime_reduction")


# ============================================================================
# Source records
# ============================================================================


@dataclass
class WorkPeriodRecord:
    """One tracked clock-in/out interval."""

    id: str
    employee_id: str
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: int | None = None
    employee_number: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    work_category_id: str | None = None
    work_category_name: str | None = None
    project_id: str | None = None
    project_name: str | None = None
    is_active: bool = False

    @property
    def is_exportable(self) -> bool:
        """Only closed periods with a duration can be exported."""
        return (
            self.end_time is not None
            and self.duration_minutes is not None
            and not self.is_active
        )

    @property
    def hours(self) -> float:
        return (self.duration_minutes or 0) / 60

    @property
    def name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass
class AbsenceRecord:
    """One approved absence. Dates are inclusive."""

    id: str
    employee_id: str
    start_date: date
    end_date: date
    absence_category_id: str
    employee_number: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    absence_category_name: str | None = None
    absence_type: str | None = None
    status: str = "approved"

    def days(self) -> list[date]:
        """Every calendar day covered by the absence."""
        count = (self.end_date - self.start_date).days + 1
        return [self.start_date + timedelta(days=i) for i in range(max(count, 0))]

    @property
    def day_count(self) -> int:
        return len(self.days())

    @property
    def name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass
class WageTypeMapping:
    """Maps one work/absence/special category to provider codes."""

    id: str
    work_category_id: str | None = None
    absence_category_id: str | None = None
    special_category: str | None = None
    wage_type_code: str = ""
    wage_type_name: str | None = None
    datev_wage_type_code: str | None = None
    datev_wage_type_name: str | None = None
    lexware_wage_type_code: str | None = None
    lexware_wage_type_name: str | None = None
    sage_wage_type_code: str | None = None
    sage_wage_type_name: str | None = None
    successfactors_time_type_code: str | None = None
    successfactors_time_type_name: str | None = None
    factor: Decimal = Decimal("1.00")
    is_active: bool = True

    def __post_init__(self):
        sources = [
            s
            for s in (self.work_category_id, self.absence_category_id, self.special_category)
            if s
        ]
        if len(sources) != 1:
            raise ValueError(
                f"Mapping {self.id} must reference exactly one of "
                "work_category_id, absence_category_id, special_category"
            )
        if self.special_category and self.special_category not in SPECIAL_WAGE_CATEGORIES:
            raise ValueError(f"Unknown special category '{self.special_category}'")


# ============================================================================
# Configuration & filters
# ============================================================================


@dataclass
class ExportConfig:
    """Organization-specific settings for one format."""

    id: str
    organization_id: str
    format_id: str
    config: dict = field(default_factory=dict)
    is_active: bool = True


@dataclass
class DateRange:
    start: date
    end: date


@dataclass
class ExportFilters:
    """Which records an export covers."""

    date_range: DateRange
    employee_ids: list[str] | None = None
    team_ids: list[str] | None = None
    project_ids: list[str] | None = None

    def to_dict(self) -> dict:
        data: dict = {
            "dateRange": {
                "start": self.date_range.start.isoformat(),
                "end": self.date_range.end.isoformat(),
            }
        }
        for key, value in (
            ("employeeIds", self.employee_ids),
            ("teamIds", self.team_ids),
            ("projectIds", self.project_ids),
        ):
            if value:
                data[key] = list(value)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ExportFilters":
        date_range = data["dateRange"]
        return cls(
            date_range=DateRange(
                start=date.fromisoformat(date_range["start"][:10]),
                end=date.fromisoformat(date_range["end"][:10]),
            ),
            employee_ids=data.get("employeeIds"),
            team_ids=data.get("teamIds"),
            project_ids=data.get("projectIds"),
        )


# ============================================================================
# Jobs & sync records
# ============================================================================


@dataclass
class ExportJob:
    """A single export request and its outcome."""

    id: str
    organization_id: str
    config_id: str
    format_id: str
    requested_by_id: str
    filters: ExportFilters
    is_async: bool = False
    status: str = JobStatus.PENDING
    error_message: str | None = None
    file_name: str | None = None
    storage_key: str | None = None
    file_size_bytes: int | None = None
    work_period_count: int | None = None
    employee_count: int | None = None
    synced_record_count: int | None = None
    failed_record_count: int | None = None
    skipped_record_count: int | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass
class SyncRecord:
    """Outcome for one source record of an API export."""

    job_id: str
    record_type: str
    source_record_id: str
    employee_id: str
    status: str
    error_message: str | None = None
    is_retryable: bool = False
    attempt_count: int = 0
    synced_at: datetime | None = None


# ============================================================================
# Export results
# ============================================================================


@dataclass
class ExportMetadata:
    work_period_count: int
    employee_count: int
    date_range_start: str
    date_range_end: str


@dataclass
class FileExportResult:
    """A generated payroll file."""

    file_name: str
    content: bytes
    mime_type: str
    encoding: str
    metadata: ExportMetadata


@dataclass
class SyncAttemptResult:
    """Outcome of pushing one request to a provider."""

    success: bool
    external_id: str | None = None
    error_message: str | None = None
    status_code: int | None = None
    is_retryable: bool = False
    attempts: int = 1


@dataclass
class RecordError:
    record_id: str
    record_type: str
    employee_id: str
    error_message: str
    is_retryable: bool
    attempt_count: int = 1


@dataclass
class SkippedRecord:
    record_id: str
    record_type: str
    employee_id: str
    reason: str


@dataclass
class ApiExportResult:
    """Aggregate outcome of an API export with record-level detail."""

    success: bool
    total_records: int
    synced_records: int
    failed_records: int
    skipped_records: int
    errors: list[RecordError] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)
    employee_count: int = 0
    date_range_start: str = ""
    date_range_end: str = ""
    api_call_count: int = 0
    duration_ms: int = 0


@dataclass
class ConnectionTestResult:
    success: bool
    error: str | None = None


@dataclass
class CreatedJob:
    job_id: str
    is_async: bool


@dataclass
class ProcessResult:
    """What processing a job hands back to the caller."""

    file_result: FileExportResult | None = None
    api_result: ApiExportResult | None = None
    download_url: str | None = None
