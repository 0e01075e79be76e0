"""Export job lifecycle: create, process, reconcile, sweep.

Jobs move pending -> processing -> completed | failed and never leave a
terminal state. Small jobs are processed inline by the caller; jobs above
the format's sync threshold wait for process_pending_jobs().
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from connectors import Connector
from errors import ConfigurationError, JobStateError
from formatters import Formatter
from models import (
    AbsenceRecord,
    ApiExportResult,
    ConnectionTestResult,
    CreatedJob,
    ExportConfig,
    ExportFilters,
    ExportJob,
    JobStatus,
    ProcessResult,
    RecordType,
    SyncAttemptResult,
    SyncRecord,
    SyncStatus,
    WageTypeMapping,
    WorkPeriodRecord,
)
from registry import ExportRegistry
from stores import DataSource, JobStore, ObjectStore
from tasks import TaskQueue

logger = logging.getLogger(__name__)

# Uploaded artifacts stay downloadable this long
DOWNLOAD_RETENTION = timedelta(days=30)
# Lifetime of a single presigned link
DOWNLOAD_URL_TTL = timedelta(hours=1)
HISTORY_LIMIT = 50
STORAGE_PREFIX = "payroll-exports"


class ExportOrchestrator:
    def __init__(
        self,
        registry: ExportRegistry,
        data: DataSource,
        jobs: JobStore,
        objects: ObjectStore,
        tasks: TaskQueue | None = None,
        clock: Callable[[], datetime] = datetime.now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.registry = registry
        self.data = data
        self.jobs = jobs
        self.objects = objects
        self.tasks = tasks or TaskQueue()
        self.clock = clock
        self.id_factory = id_factory
        self.completion_hooks: list[Callable[[ExportJob], None]] = []

    def on_job_finished(self, hook: Callable[[ExportJob], None]) -> None:
        """Run hook(job) as a queued task whenever a job reaches a terminal state."""
        self.completion_hooks.append(hook)

    # ========================================================================
    # Lookup
    # ========================================================================

    def _implementation(self, format_id: str) -> Formatter | Connector:
        impl = self.registry.get(format_id)
        if impl is None:
            raise ConfigurationError(f"Unknown export format: {format_id}")
        return impl

    def _load_config(self, organization_id: str, impl: Formatter | Connector) -> ExportConfig:
        config = self.data.get_export_config(organization_id, impl.id)
        if config is None:
            raise ConfigurationError(f"No configuration found for format: {impl.id}")
        if not config.is_active:
            raise ConfigurationError(f"Configuration for format {impl.id} is inactive")
        errors = impl.validate_config(config.config)
        if errors:
            raise ConfigurationError(f"Invalid configuration for format {impl.id}", errors)
        return config

    # ========================================================================
    # Create
    # ========================================================================

    def create_export_job(
        self,
        organization_id: str,
        format_id: str,
        requested_by_id: str,
        filters: ExportFilters,
    ) -> CreatedJob:
        impl = self._implementation(format_id)
        config = self._load_config(organization_id, impl)

        count = self.data.count_work_periods(organization_id, filters)
        is_async = count > impl.get_sync_threshold()

        job = ExportJob(
            id=self.id_factory(),
            organization_id=organization_id,
            config_id=config.id,
            format_id=format_id,
            requested_by_id=requested_by_id,
            filters=filters,
            is_async=is_async,
            work_period_count=count,
            created_at=self.clock(),
        )
        self.jobs.insert_job(job)

        logger.info(
            "Created payroll export job",
            extra={"job_id": job.id, "format_id": format_id, "work_period_count": count, "is_async": is_async},
        )
        return CreatedJob(job_id=job.id, is_async=is_async)

    # ========================================================================
    # Process
    # ========================================================================

    def process_export_job(self, job_id: str) -> ProcessResult:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobStateError(f"Job not found: {job_id}")
        if job.status != JobStatus.PENDING:
            raise JobStateError(f"Job {job_id} is {job.status}, only pending jobs can be processed")

        job = self.jobs.update_job(job_id, status=JobStatus.PROCESSING, started_at=self.clock())
        logger.info("Processing payroll export job", extra={"job_id": job_id, "format_id": job.format_id})

        uploaded: list[str] = []
        try:
            impl = self._implementation(job.format_id)
            config = self._load_config(job.organization_id, impl)
            work_periods = self.data.fetch_work_periods(job.organization_id, job.filters)
            absences = self.data.fetch_absences(job.organization_id, job.filters)
            mappings = self.data.get_wage_type_mappings(config.id)

            if isinstance(impl, Formatter):
                result = self._process_file(job, impl, config, work_periods, absences, mappings, uploaded)
            else:
                result = self._process_api(job, impl, config, work_periods, absences, mappings)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error("Payroll export job failed", extra={"job_id": job_id, "error": message})
            for key in uploaded:
                self._delete_artifact(key)
            job = self.jobs.update_job(
                job_id,
                status=JobStatus.FAILED,
                error_message=message,
                storage_key=None,
                completed_at=self.clock(),
            )
            self._finished(job)
            raise

        self._finished(self.jobs.get_job(job_id))
        return result

    def _process_file(
        self,
        job: ExportJob,
        formatter: Formatter,
        config: ExportConfig,
        work_periods: list[WorkPeriodRecord],
        absences: list[AbsenceRecord],
        mappings: list[WageTypeMapping],
        uploaded: list[str],
    ) -> ProcessResult:
        now = self.clock()
        file_result = formatter.transform(work_periods, absences, mappings, config.config, now=now)
        fields = dict(
            status=JobStatus.COMPLETED,
            file_name=file_result.file_name,
            file_size_bytes=len(file_result.content),
            work_period_count=file_result.metadata.work_period_count,
            employee_count=file_result.metadata.employee_count,
            completed_at=now,
        )

        if not job.is_async:
            self.jobs.update_job(job.id, **fields)
            logger.info("Payroll export job completed", extra={"job_id": job.id, "file_name": file_result.file_name})
            return ProcessResult(file_result=file_result)

        key = f"{STORAGE_PREFIX}/{job.organization_id}/{job.id}/{file_result.file_name}"
        self.objects.upload(key, file_result.content, file_result.mime_type)
        uploaded.append(key)
        url = self.objects.presigned_url(key, DOWNLOAD_URL_TTL)

        self.jobs.update_job(job.id, storage_key=key, expires_at=now + DOWNLOAD_RETENTION, **fields)
        logger.info("Payroll export job completed", extra={"job_id": job.id, "storage_key": key})
        return ProcessResult(file_result=file_result, download_url=url)

    def _process_api(
        self,
        job: ExportJob,
        connector: Connector,
        config: ExportConfig,
        work_periods: list[WorkPeriodRecord],
        absences: list[AbsenceRecord],
        mappings: list[WageTypeMapping],
    ) -> ProcessResult:
        def on_record(record_type: str, req, result: SyncAttemptResult) -> None:
            self.jobs.upsert_sync_record(
                SyncRecord(
                    job_id=job.id,
                    record_type=record_type,
                    source_record_id=req.external_reference,
                    employee_id=req.employee_id,
                    status=SyncStatus.SYNCED if result.success else SyncStatus.FAILED,
                    error_message=result.error_message,
                    is_retryable=result.is_retryable,
                    attempt_count=result.attempts,
                    synced_at=self.clock() if result.success else None,
                )
            )

        api_result = connector.export(
            job.organization_id, work_periods, absences, mappings, config.config, on_record=on_record
        )
        self._reconcile(job.id, work_periods, absences, api_result)

        failed = api_result.failed_records
        self.jobs.update_job(
            job.id,
            status=JobStatus.COMPLETED if failed == 0 else JobStatus.FAILED,
            error_message=None if failed == 0 else f"{failed} of {api_result.total_records} records failed to sync",
            work_period_count=len(work_periods),
            employee_count=api_result.employee_count,
            synced_record_count=api_result.synced_records,
            failed_record_count=failed,
            skipped_record_count=api_result.skipped_records,
            completed_at=self.clock(),
        )
        logger.info(
            "Payroll API export finished",
            extra={
                "job_id": job.id,
                "synced": api_result.synced_records,
                "failed": failed,
                "skipped": api_result.skipped_records,
            },
        )
        return ProcessResult(api_result=api_result)

    def _reconcile(
        self,
        job_id: str,
        work_periods: list[WorkPeriodRecord],
        absences: list[AbsenceRecord],
        api_result: ApiExportResult,
    ) -> None:
        """Leave exactly one SyncRecord per source record."""
        errors = {e.record_id: e for e in api_result.errors}
        skipped = {s.record_id: s for s in api_result.skipped}
        existing = {r.source_record_id: r for r in self.jobs.get_sync_records(job_id)}

        sources = [(RecordType.ATTENDANCE, p) for p in work_periods]
        sources += [(RecordType.ABSENCE, a) for a in absences]

        for record_type, source in sources:
            previous = existing.get(source.id)
            record = SyncRecord(job_id, record_type, source.id, source.employee_id, SyncStatus.SYNCED)
            if source.id in errors:
                error = errors[source.id]
                record.status = SyncStatus.FAILED
                record.error_message = error.error_message
                record.is_retryable = error.is_retryable
                record.attempt_count = error.attempt_count
            elif source.id in skipped:
                record.status = SyncStatus.SKIPPED
                record.error_message = skipped[source.id].reason
            else:
                record.attempt_count = previous.attempt_count if previous else 1
                record.synced_at = previous.synced_at if previous and previous.synced_at else self.clock()
            self.jobs.upsert_sync_record(record)

    def _delete_artifact(self, key: str) -> None:
        try:
            self.objects.delete(key)
        except Exception as e:
            logger.error("Could not delete artifact of failed job", extra={"storage_key": key, "error": str(e)})

    def _finished(self, job: ExportJob) -> None:
        for hook in self.completion_hooks:
            self.tasks.enqueue(getattr(hook, "__name__", "completion_hook"), hook, job)
        self.tasks.drain()

    # ========================================================================
    # Sweep & operator actions
    # ========================================================================

    def get_pending_jobs(self) -> list[ExportJob]:
        """Pending jobs, oldest first."""
        jobs = self.jobs.list_jobs(status=JobStatus.PENDING)
        return sorted(jobs, key=lambda j: j.created_at or datetime.min)

    def process_pending_jobs(self) -> dict[str, str]:
        """Process every pending job. Returns job id -> final status."""
        outcome = {}
        for job in self.get_pending_jobs():
            try:
                self.process_export_job(job.id)
            except Exception:
                logger.exception("Pending job failed during sweep", extra={"job_id": job.id})
            final = self.jobs.get_job(job.id)
            outcome[job.id] = final.status if final else JobStatus.FAILED
        return outcome

    def mark_job_failed(self, job_id: str, message: str) -> ExportJob:
        """Operator escape hatch for a stuck job."""
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobStateError(f"Job not found: {job_id}")
        if job.status in JobStatus.TERMINAL:
            raise JobStateError(f"Job {job_id} is already {job.status}")
        job = self.jobs.update_job(
            job_id, status=JobStatus.FAILED, error_message=message, completed_at=self.clock()
        )
        logger.warning("Job marked failed by operator", extra={"job_id": job_id})
        self._finished(job)
        return job

    # ========================================================================
    # Queries
    # ========================================================================

    def get_job_history(self, organization_id: str, limit: int = HISTORY_LIMIT) -> list[ExportJob]:
        jobs = self.jobs.list_jobs(organization_id=organization_id)
        jobs.sort(key=lambda j: j.created_at or datetime.min, reverse=True)
        return jobs[:limit]

    def get_download_url(self, organization_id: str, job_id: str) -> str | None:
        job = self.jobs.get_job(job_id)
        if job is None or job.organization_id != organization_id:
            return None
        if job.status != JobStatus.COMPLETED or not job.storage_key:
            return None
        if job.expires_at and self.clock() >= job.expires_at:
            return None
        return self.objects.presigned_url(job.storage_key, DOWNLOAD_URL_TTL)

    def get_sync_records(self, job_id: str) -> list[SyncRecord]:
        return self.jobs.get_sync_records(job_id)

    def test_connection(self, organization_id: str, format_id: str) -> ConnectionTestResult:
        """Connectors call the provider; formatters only check their config."""
        impl = self._implementation(format_id)
        config = self.data.get_export_config(organization_id, format_id)
        settings = config.config if config else {}
        if isinstance(impl, Connector):
            return impl.test_connection(organization_id, settings)
        errors = impl.validate_config(settings)
        if errors:
            return ConnectionTestResult(success=False, error="; ".join(errors))
        return ConnectionTestResult(success=True)
