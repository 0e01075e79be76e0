"""Collaborator interfaces and the in-process implementations the CLI uses.

The orchestrator only talks to these protocols. Production deployments
plug in their database, secret manager and object storage; the classes
here keep everything in memory or on the local disk.
"""

import json
import logging
import os
import re
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol

from models import (
    AbsenceRecord,
    ExportConfig,
    ExportFilters,
    ExportJob,
    SyncRecord,
    WageTypeMapping,
    WorkPeriodRecord,
)
from utils import parse_date

logger = logging.getLogger(__name__)


# ============================================================================
# Protocols
# ============================================================================


class DataSource(Protocol):
    def fetch_work_periods(self, organization_id: str, filters: ExportFilters) -> list[WorkPeriodRecord]: ...

    def fetch_absences(self, organization_id: str, filters: ExportFilters) -> list[AbsenceRecord]: ...

    def count_work_periods(self, organization_id: str, filters: ExportFilters) -> int: ...

    def get_wage_type_mappings(self, config_id: str) -> list[WageTypeMapping]: ...

    def get_export_config(self, organization_id: str, format_id: str) -> ExportConfig | None: ...


class JobStore(Protocol):
    def insert_job(self, job: ExportJob) -> None: ...

    def get_job(self, job_id: str) -> ExportJob | None: ...

    def update_job(self, job_id: str, **fields) -> ExportJob: ...

    def list_jobs(self, organization_id: str | None = None, status: str | None = None) -> list[ExportJob]: ...

    def upsert_sync_record(self, record: SyncRecord) -> None: ...

    def get_sync_records(self, job_id: str) -> list[SyncRecord]: ...


class ObjectStore(Protocol):
    def upload(self, path: str, data: bytes, mime_type: str) -> None: ...

    def presigned_url(self, path: str, expires_in: timedelta) -> str: ...

    def delete(self, path: str) -> None: ...


class SecretStore(Protocol):
    def get_secret(self, organization_id: str, key: str) -> str | None: ...


# ============================================================================
# Jobs
# ============================================================================


class InMemoryJobStore:
    """Jobs and sync records in dicts. SyncRecords are keyed by (job, source record)."""

    def __init__(self):
        self.jobs: dict[str, ExportJob] = {}
        self.sync_records: dict[tuple[str, str], SyncRecord] = {}

    def insert_job(self, job: ExportJob) -> None:
        if job.id in self.jobs:
            raise ValueError(f"Job {job.id} already exists")
        self.jobs[job.id] = job

    def get_job(self, job_id: str) -> ExportJob | None:
        return self.jobs.get(job_id)

    def update_job(self, job_id: str, **fields) -> ExportJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(f"Job {job_id} not found")
        job = replace(job, **fields)
        self.jobs[job_id] = job
        return job

    def list_jobs(self, organization_id: str | None = None, status: str | None = None) -> list[ExportJob]:
        return [
            job
            for job in self.jobs.values()
            if (organization_id is None or job.organization_id == organization_id)
            and (status is None or job.status == status)
        ]

    def upsert_sync_record(self, record: SyncRecord) -> None:
        self.sync_records[(record.job_id, record.source_record_id)] = record

    def get_sync_records(self, job_id: str) -> list[SyncRecord]:
        return [r for (jid, _), r in self.sync_records.items() if jid == job_id]


# ============================================================================
# Records
# ============================================================================


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _snake_dict(data: dict) -> dict:
    return {_snake(k): v for k, v in data.items()}


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class StaticDataSource:
    """Records of a single organization, filtered in memory."""

    def __init__(
        self,
        organization_id: str,
        work_periods: list[WorkPeriodRecord] | None = None,
        absences: list[AbsenceRecord] | None = None,
        configs: list[ExportConfig] | None = None,
        mappings: dict[str, list[WageTypeMapping]] | None = None,
        teams: dict[str, str] | None = None,
    ):
        self.organization_id = organization_id
        self.work_periods = work_periods or []
        self.absences = absences or []
        self.configs = configs or []
        self.mappings = mappings or {}
        # employee id -> team id
        self.teams = teams or {}

    def _employee_allowed(self, employee_id: str, filters: ExportFilters) -> bool:
        if filters.employee_ids and employee_id not in filters.employee_ids:
            return False
        if filters.team_ids and self.teams.get(employee_id) not in filters.team_ids:
            return False
        return True

    def fetch_work_periods(self, organization_id: str, filters: ExportFilters) -> list[WorkPeriodRecord]:
        if organization_id != self.organization_id:
            return []
        start, end = filters.date_range.start, filters.date_range.end
        periods = [
            p
            for p in self.work_periods
            if not p.is_active
            and start <= p.start_time.date() <= end
            and self._employee_allowed(p.employee_id, filters)
            and (not filters.project_ids or p.project_id in filters.project_ids)
        ]
        logger.info("Fetched work periods", extra={"organization_id": organization_id, "count": len(periods)})
        return periods

    def fetch_absences(self, organization_id: str, filters: ExportFilters) -> list[AbsenceRecord]:
        if organization_id != self.organization_id:
            return []
        start, end = filters.date_range.start, filters.date_range.end
        absences = [
            a
            for a in self.absences
            if a.status == "approved"
            and a.start_date <= end
            and a.end_date >= start
            and self._employee_allowed(a.employee_id, filters)
        ]
        logger.info("Fetched absences", extra={"organization_id": organization_id, "count": len(absences)})
        return absences

    def count_work_periods(self, organization_id: str, filters: ExportFilters) -> int:
        return sum(1 for p in self.fetch_work_periods(organization_id, filters) if p.is_exportable)

    def get_wage_type_mappings(self, config_id: str) -> list[WageTypeMapping]:
        return list(self.mappings.get(config_id, []))

    def get_export_config(self, organization_id: str, format_id: str) -> ExportConfig | None:
        for config in self.configs:
            if config.organization_id == organization_id and config.format_id == format_id:
                return config
        return None

    @classmethod
    def from_json(cls, path: str, organization_id: str) -> "StaticDataSource":
        """Load an export data file with camelCase keys.

        Employees are joined onto their work periods and absences.
        """
        with open(path) as f:
            data = json.load(f)

        employees = {e["id"]: _snake_dict(e) for e in data.get("employees", [])}

        def employee_fields(employee_id: str) -> dict:
            employee = employees.get(employee_id, {})
            return {
                "employee_number": employee.get("employee_number"),
                "first_name": employee.get("first_name"),
                "last_name": employee.get("last_name"),
                "email": employee.get("email"),
            }

        work_periods = []
        for raw in data.get("workPeriods", []):
            fields = _snake_dict(raw)
            fields.update(employee_fields(fields["employee_id"]))
            fields["start_time"] = _parse_datetime(fields["start_time"])
            fields["end_time"] = _parse_datetime(fields.get("end_time"))
            work_periods.append(WorkPeriodRecord(**fields))

        absences = []
        for raw in data.get("absences", []):
            fields = _snake_dict(raw)
            fields.update(employee_fields(fields["employee_id"]))
            fields["start_date"] = parse_date(fields["start_date"])
            fields["end_date"] = parse_date(fields["end_date"])
            absences.append(AbsenceRecord(**fields))

        configs = [
            ExportConfig(
                id=c["id"],
                organization_id=organization_id,
                format_id=c["formatId"],
                config=c.get("config", {}),
                is_active=c.get("isActive", True),
            )
            for c in data.get("exportConfigs", [])
        ]

        mappings = {}
        for config_id, raw_mappings in data.get("wageTypeMappings", {}).items():
            mappings[config_id] = []
            for raw in raw_mappings:
                fields = _snake_dict(raw)
                if "factor" in fields:
                    fields["factor"] = Decimal(str(fields["factor"]))
                mappings[config_id].append(WageTypeMapping(**fields))

        teams = {e_id: e["team_id"] for e_id, e in employees.items() if e.get("team_id")}

        return cls(organization_id, work_periods, absences, configs, mappings, teams)


# ============================================================================
# Files & secrets
# ============================================================================


class LocalObjectStore:
    """Stores artifacts below a root directory and hands out file:// URLs."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _full_path(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, path))
        if not full.startswith(self.root + os.sep):
            raise ValueError(f"Path escapes storage root: {path}")
        return full

    def upload(self, path: str, data: bytes, mime_type: str) -> None:
        full = self._full_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as f:
            f.write(data)
        logger.debug("Stored artifact", extra={"path": path, "mime_type": mime_type, "size": len(data)})

    def presigned_url(self, path: str, expires_in: timedelta) -> str:
        """Local files do not expire; expires_in is accepted for parity."""
        full = self._full_path(path)
        if not os.path.exists(full):
            raise FileNotFoundError(full)
        return "file://" + full

    def delete(self, path: str) -> None:
        full = self._full_path(path)
        if os.path.exists(full):
            os.remove(full)

    def read(self, path: str) -> bytes:
        with open(self._full_path(path), "rb") as f:
            return f.read()


class StaticSecretStore:
    """organization id -> secret key -> value."""

    def __init__(self, secrets: dict[str, dict[str, str]] | None = None):
        self.secrets = secrets or {}

    def get_secret(self, organization_id: str, key: str) -> str | None:
        return self.secrets.get(organization_id, {}).get(key)
