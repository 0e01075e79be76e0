"""API connectors that push time records to Personio and SuccessFactors.

A connector owns config validation, credential lookup and batching. The
HTTP work is done by the clients in clients.py; record preparation by
transformers.prepare_requests().
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from clients import ApiClient, PersonioClient, SuccessFactorsClient
from errors import ApiError, ConfigurationError
from mapping import EmployeeResolver, WageTypeResolver
from models import (
    AbsenceRecord,
    ApiExportResult,
    ConnectionTestResult,
    ProviderKind,
    RecordError,
    RecordType,
    SyncAttemptResult,
    WageTypeMapping,
    WorkPeriodRecord,
)
from patterns import Patterns
from stores import SecretStore
from transformers import prepare_requests
from utils import iso_or_empty, record_date_range

logger = logging.getLogger(__name__)

SYNC_THRESHOLD = 500

PERSONIO_CLIENT_ID_KEY = "payroll/personio/client_id"
PERSONIO_CLIENT_SECRET_KEY = "payroll/personio/client_secret"
SUCCESSFACTORS_CLIENT_ID_KEY = "payroll/successfactors/client_id"
SUCCESSFACTORS_CLIENT_SECRET_KEY = "payroll/successfactors/client_secret"

DEFAULT_PERSONIO_CONFIG = {
    "employeeMatchStrategy": "employeeNumber",
    "includeZeroHours": False,
    "batchSize": 50,
    "apiTimeoutMs": 30000,
}

DEFAULT_SUCCESSFACTORS_CONFIG = {
    "instanceUrl": "",
    "companyId": "",
    "employeeMatchStrategy": "employeeNumber",
    "includeZeroHours": False,
    "batchSize": 100,
    "apiTimeoutMs": 60000,
}

# Called once per pushed record as soon as the provider answered
RecordCallback = Callable[[str, object, SyncAttemptResult], None]


# ============================================================================
# Config validation
# ============================================================================


def _check_range(config: dict, key: str, low: int, high: int, message: str, errors: list[str]) -> None:
    value = config.get(key)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        errors.append(message)


def _check_common(config: dict, max_batch: int, errors: list[str]) -> None:
    if config.get("employeeMatchStrategy") not in (None, "employeeNumber", "email"):
        errors.append("Employee match strategy must be 'employeeNumber' or 'email'")
    _check_range(config, "batchSize", 1, max_batch, f"Batch size must be between 1 and {max_batch}", errors)
    _check_range(
        config, "apiTimeoutMs", 5000, 120000,
        "API timeout must be between 5000 and 120000 milliseconds", errors,
    )
    if "includeZeroHours" in config and not isinstance(config["includeZeroHours"], bool):
        errors.append("includeZeroHours must be true or false")


def _validate_personio(config: dict) -> list[str]:
    errors: list[str] = []
    _check_common(config, 200, errors)
    return errors


def _validate_successfactors(config: dict) -> list[str]:
    errors: list[str] = []

    instance_url = config.get("instanceUrl")
    if not instance_url:
        errors.append("Instance URL is required")
    elif not Patterns.INSTANCE_URL.match(instance_url):
        errors.append("Instance URL must be an https:// URL")

    if not config.get("companyId"):
        errors.append("Company ID is required")

    _check_common(config, 500, errors)
    return errors


def _personio_absence_code(code: str) -> str | None:
    if Patterns.NUMERIC_ID.match(code):
        return None
    return f"Personio time-off type id must be numeric, got '{code}'"


# ============================================================================
# Provider rules
# ============================================================================


@dataclass
class ProviderRules:
    """Everything that differs between two API providers."""

    validate: Callable[[dict], list[str]]
    build_client: Callable[[dict, dict, dict], ApiClient]
    push_attendances: Callable[[ApiClient, list, Callable], list]
    push_absences: Callable[[ApiClient, list, Callable], list]
    secret_keys: tuple[str, str]
    numeric_ids: bool = False
    check_absence_code: Callable[[str], str | None] | None = None


def _build_personio(config: dict, credentials: dict, options: dict) -> ApiClient:
    return PersonioClient(
        credentials["client_id"],
        credentials["client_secret"],
        timeout_ms=config["apiTimeoutMs"],
        **options,
    )


def _build_successfactors(config: dict, credentials: dict, options: dict) -> ApiClient:
    return SuccessFactorsClient(
        credentials["client_id"],
        credentials["client_secret"],
        config["instanceUrl"],
        config["companyId"],
        timeout_ms=config["apiTimeoutMs"],
        **options,
    )


RULES: dict[str, ProviderRules] = {
    ProviderKind.PERSONIO: ProviderRules(
        validate=_validate_personio,
        build_client=_build_personio,
        push_attendances=lambda client, batch, on_result: client.create_attendances(batch, on_result),
        push_absences=lambda client, batch, on_result: client.create_absences(batch, on_result),
        secret_keys=(PERSONIO_CLIENT_ID_KEY, PERSONIO_CLIENT_SECRET_KEY),
        numeric_ids=True,
        check_absence_code=_personio_absence_code,
    ),
    ProviderKind.SUCCESSFACTORS: ProviderRules(
        validate=_validate_successfactors,
        build_client=_build_successfactors,
        push_attendances=lambda client, batch, on_result: client.create_time_records(batch, on_result),
        push_absences=lambda client, batch, on_result: client.create_absences(batch, on_result),
        secret_keys=(SUCCESSFACTORS_CLIENT_ID_KEY, SUCCESSFACTORS_CLIENT_SECRET_KEY),
    ),
}


# ============================================================================
# Connector
# ============================================================================


@dataclass
class Connector:
    """A registered API connector.

    client_options are passed through to the HTTP client (session, sleep,
    clock, retry_policy), which keeps tests off the network.
    """

    id: str
    name: str
    version: str
    kind: str
    secrets: SecretStore
    default_config: dict = field(default_factory=dict)
    sync_threshold: int = SYNC_THRESHOLD
    client_options: dict = field(default_factory=dict)

    family = "connector"

    @property
    def rules(self) -> ProviderRules:
        return RULES[self.kind]

    def merged_config(self, config: dict) -> dict:
        return {**self.default_config, **(config or {})}

    def validate_config(self, config: dict) -> list[str]:
        return self.rules.validate(self.merged_config(config))

    def get_sync_threshold(self) -> int:
        return self.sync_threshold

    def get_credentials(self, organization_id: str) -> dict | None:
        id_key, secret_key = self.rules.secret_keys
        client_id = self.secrets.get_secret(organization_id, id_key)
        client_secret = self.secrets.get_secret(organization_id, secret_key)
        if not client_id or not client_secret:
            return None
        return {"client_id": client_id, "client_secret": client_secret}

    def build_client(self, organization_id: str, config: dict) -> ApiClient:
        credentials = self.get_credentials(organization_id)
        if credentials is None:
            raise ConfigurationError(
                f"{self.name} credentials not configured. Please enter your Client ID and Client Secret."
            )
        return self.rules.build_client(self.merged_config(config), credentials, self.client_options)

    def test_connection(self, organization_id: str, config: dict) -> ConnectionTestResult:
        errors = self.validate_config(config)
        if errors:
            return ConnectionTestResult(success=False, error="; ".join(errors))
        try:
            client = self.build_client(organization_id, config)
        except ConfigurationError as e:
            return ConnectionTestResult(success=False, error=str(e))
        return client.test_connection()

    def export(
        self,
        organization_id: str,
        work_periods: list[WorkPeriodRecord],
        absences: list[AbsenceRecord],
        mappings: list[WageTypeMapping],
        config: dict,
        on_record: RecordCallback | None = None,
    ) -> ApiExportResult:
        """Push every record, one call each, in batches of batchSize.

        Record-level failures end up in the result. Authentication errors
        and missing credentials abort the export.
        """
        started = time.monotonic()
        config = self.merged_config(config)
        logger.info(
            "Starting %s export",
            self.name,
            extra={
                "organization_id": organization_id,
                "work_period_count": len(work_periods),
                "absence_count": len(absences),
            },
        )

        rules = self.rules
        client = self.build_client(organization_id, config)
        prepared = prepare_requests(
            work_periods,
            absences,
            WageTypeResolver(mappings, self.kind),
            EmployeeResolver(config["employeeMatchStrategy"], numeric_ids=rules.numeric_ids),
            include_zero_hours=config["includeZeroHours"],
            check_absence_code=rules.check_absence_code,
        )

        errors: list[RecordError] = list(prepared.unresolved)
        synced = 0

        def record(record_type: str):
            def on_result(req, result: SyncAttemptResult) -> None:
                nonlocal synced
                if result.success:
                    synced += 1
                else:
                    errors.append(
                        RecordError(
                            record_id=req.external_reference,
                            record_type=record_type,
                            employee_id=req.employee_id,
                            error_message=result.error_message or "Unknown error",
                            is_retryable=result.is_retryable,
                            attempt_count=result.attempts,
                        )
                    )
                if on_record:
                    on_record(record_type, req, result)

            return on_result

        batch_size = config["batchSize"]
        for items, push, record_type in (
            (prepared.attendances, rules.push_attendances, RecordType.ATTENDANCE),
            (prepared.absences, rules.push_absences, RecordType.ABSENCE),
        ):
            for start in range(0, len(items), batch_size):
                push(client, items[start:start + batch_size], record(record_type))

        employees = {p.employee_id for p in work_periods} | {a.employee_id for a in absences}
        range_start, range_end = record_date_range(work_periods, absences)
        result = ApiExportResult(
            success=not errors,
            total_records=len(work_periods) + len(absences),
            synced_records=synced,
            failed_records=len(errors),
            skipped_records=len(prepared.skipped),
            errors=errors,
            skipped=prepared.skipped,
            employee_count=len(employees),
            date_range_start=iso_or_empty(range_start),
            date_range_end=iso_or_empty(range_end),
            api_call_count=client.api_call_count,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        logger.info(
            "%s export completed",
            self.name,
            extra={
                "synced": result.synced_records,
                "failed": result.failed_records,
                "skipped": result.skipped_records,
                "api_calls": result.api_call_count,
            },
        )
        return result

    def get_time_off_types(self, organization_id: str, config: dict) -> list[dict]:
        """Personio only: time-off types to pick absence mappings from."""
        client = self.build_client(organization_id, config)
        if not isinstance(client, PersonioClient):
            raise ApiError(f"{self.name} does not list time-off types")
        return client.get_time_off_types()


def default_connectors(secrets: SecretStore, client_options: dict | None = None) -> list[Connector]:
    options = client_options or {}
    return [
        Connector(
            ProviderKind.PERSONIO, "Personio", "1.0.0", ProviderKind.PERSONIO, secrets,
            dict(DEFAULT_PERSONIO_CONFIG), client_options=options,
        ),
        Connector(
            ProviderKind.SUCCESSFACTORS, "SAP SuccessFactors (API)", "1.0.0", ProviderKind.SUCCESSFACTORS, secrets,
            dict(DEFAULT_SUCCESSFACTORS_CONFIG), client_options=options,
        ),
    ]
