"""API clients for Personio and SAP SuccessFactors."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import requests

from errors import ApiError, AuthenticationError, PermanentProviderError, TransientProviderError
from models import ConnectionTestResult, SyncAttemptResult
from transformers import AbsenceRequest, AttendanceRequest
from utils import retry_call

logger = logging.getLogger(__name__)

PERSONIO_API_BASE = "https://api.personio.de/v1"

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Batches larger than this get a short pause after every call
THROTTLE_THRESHOLD = 10
THROTTLE_DELAY = 0.05


def _handle_api_error(response: requests.Response, service: str) -> str:
    """Convert HTTP errors to user-friendly messages."""
    status = response.status_code

    messages = {
        401: f"{service}: Authentication failed. Check your credentials!",
        403: f"{service}: Access denied. Check the API permissions of your client!",
        404: f"{service}: Resource not found. Check the instance URL in the export config!",
        408: f"{service}: Request timed out. Try again later.",
        429: f"{service}: Too many requests. Wait a moment and try again.",
        500: f"{service}: Server error. The service may be temporarily unavailable.",
        502: f"{service}: Bad gateway. The service may be temporarily unavailable.",
        503: f"{service}: Service unavailable. Try again later.",
        504: f"{service}: Gateway timeout. Try again later.",
    }

    return messages.get(status, f"{service}: HTTP {status} - {response.reason}")


def _json(response: requests.Response) -> dict | list | None:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def error_for_status(status: int, message: str, retryable: frozenset = RETRYABLE_STATUS_CODES) -> ApiError:
    if status in retryable:
        return TransientProviderError(message, status)
    return PermanentProviderError(message, status)


# ============================================================================
# Shared machinery
# ============================================================================


class TokenCache:
    """Access token with an expiry, refreshed before it runs out."""

    def __init__(self, buffer: timedelta, clock: Callable[[], datetime] = datetime.now):
        self.buffer = buffer
        self.clock = clock
        self.token: str | None = None
        self.expires_at: datetime | None = None

    def valid(self) -> bool:
        if self.token is None or self.expires_at is None:
            return False
        return self.clock() < self.expires_at - self.buffer

    def store(self, token: str, lifetime: timedelta) -> None:
        self.token = token
        self.expires_at = self.clock() + lifetime

    def clear(self) -> None:
        self.token = None
        self.expires_at = None


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    retryable_statuses: frozenset = RETRYABLE_STATUS_CODES

    def delay(self, attempt: int) -> float:
        """Wait before the attempt after `attempt` (1-based)."""
        return self.base_delay * 2 ** (attempt - 1)


class ApiClient:
    """Sequential, retrying HTTP client with a cached bearer token.

    Subclasses provide authenticate(), the API base URL and how errors
    and successful bodies are unwrapped.
    """

    service = "API"

    def __init__(
        self,
        base_url: str,
        timeout_ms: int,
        token_buffer: timedelta,
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_ms / 1000
        self.session = session or requests.Session()
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.tokens = TokenCache(token_buffer, clock)
        self.api_call_count = 0

    # --- hooks ---------------------------------------------------------------

    def authenticate(self) -> None:
        raise NotImplementedError

    def _error_detail(self, body) -> str | None:
        return None

    def _unwrap(self, body):
        return body

    # --- transport -----------------------------------------------------------

    def _http(self, method: str, url: str, **kwargs) -> requests.Response:
        """Issue one HTTP call. Every call counts, auth included."""
        self.api_call_count += 1
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise TransientProviderError(f"{self.service}: Connection timed out. The server may be slow.")
        except requests.exceptions.ConnectionError:
            raise TransientProviderError(f"{self.service}: Cannot connect to {url}. Check your network!")

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.tokens.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _auth_error(self, response: requests.Response, message: str) -> ApiError:
        """Token endpoint failure: retryable statuses are transient, the rest mean bad credentials."""
        if response.status_code in self.retry_policy.retryable_statuses:
            return TransientProviderError(_handle_api_error(response, self.service), response.status_code)
        return AuthenticationError(message, response.status_code)

    def _error(self, response: requests.Response) -> ApiError:
        status = response.status_code
        detail = self._error_detail(_json(response))
        if detail and status not in (401, 403):
            message = f"{self.service}: {detail}"
        else:
            message = _handle_api_error(response, self.service)
        return error_for_status(status, message, self.retry_policy.retryable_statuses)

    def request(self, method: str, path: str, json: dict | None = None, params: dict | None = None):
        """Authenticated call; returns the unwrapped body or raises ApiError."""
        self.authenticate()
        response = self._http(method, f"{self.base_url}{path}", json=json, params=params, headers=self._headers())
        if not response.ok:
            if response.status_code == 401:
                # Force a fresh token for the next call
                self.tokens.clear()
            raise self._error(response)
        return self._unwrap(_json(response))

    def send(self, path: str, payload: dict, reference: str) -> SyncAttemptResult:
        """POST one record with retries. Only authentication errors escape."""
        policy = self.retry_policy
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            return self.request("POST", path, json=payload)

        def on_retry(attempt_num: int, error: Exception) -> None:
            logger.info(
                "Retrying %s call",
                self.service,
                extra={"reference": reference, "attempt": attempt_num, "error": str(error)},
            )

        try:
            data = retry_call(
                attempt,
                max_attempts=policy.max_attempts,
                delay=policy.base_delay,
                backoff=2.0,
                retry_on=(TransientProviderError,),
                on_retry=on_retry,
                sleep=self.sleep,
            )
        except AuthenticationError:
            raise
        except ApiError as e:
            logger.warning(
                "%s rejected record",
                self.service,
                extra={"reference": reference, "status_code": e.status_code, "attempts": attempts},
            )
            return SyncAttemptResult(
                success=False,
                error_message=str(e),
                status_code=e.status_code,
                is_retryable=e.is_retryable,
                attempts=attempts,
            )

        return SyncAttemptResult(
            success=True,
            external_id=self._external_id(data) or reference,
            attempts=attempts,
        )

    def _external_id(self, data) -> str | None:
        return None

    def send_all(
        self,
        items: list,
        push: Callable[[object], SyncAttemptResult],
        on_result: Callable[[object, SyncAttemptResult], None] | None = None,
    ) -> list[SyncAttemptResult]:
        """Push items one at a time, throttled for larger batches."""
        results = []
        for item in items:
            result = push(item)
            results.append(result)
            if on_result:
                on_result(item, result)
            if len(items) > THROTTLE_THRESHOLD:
                self.sleep(THROTTLE_DELAY)
        return results

    def test_connection(self) -> ConnectionTestResult:
        try:
            self.authenticate()
            self._probe()
        except ApiError as e:
            logger.error("Connection test failed", extra={"service": self.service, "error": str(e)})
            return ConnectionTestResult(success=False, error=str(e))
        return ConnectionTestResult(success=True)

    def _probe(self) -> None:
        raise NotImplementedError


# ============================================================================
# Personio
# ============================================================================


class PersonioClient(ApiClient):
    """Client for the Personio REST API (v1)."""

    service = "Personio"

    def __init__(self, client_id: str, client_secret: str, timeout_ms: int = 30000, base_url: str = PERSONIO_API_BASE, **kwargs):
        # Tokens live 24h; treat them as 23h and renew 5 minutes early
        super().__init__(base_url, timeout_ms, timedelta(minutes=5), **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret

    def authenticate(self) -> None:
        if self.tokens.valid():
            return

        logger.info("Authenticating with Personio API")
        response = self._http(
            "POST",
            f"{self.base_url}/auth",
            json={"client_id": self.client_id, "client_secret": self.client_secret},
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )

        body = _json(response)
        if not response.ok or not isinstance(body, dict) or not body.get("success"):
            detail = self._error_detail(body)
            message = f"Personio: Authentication failed: {detail}" if detail else _handle_api_error(response, self.service)
            raise self._auth_error(response, message)

        self.tokens.store(body["data"]["token"], timedelta(hours=23))

    def _error_detail(self, body) -> str | None:
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return body["error"].get("message")
        return None

    def _unwrap(self, body):
        if isinstance(body, dict) and body.get("success") is False:
            raise PermanentProviderError(f"Personio: {self._error_detail(body) or 'Request failed'}")
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    def _external_id(self, data) -> str | None:
        if isinstance(data, dict) and data.get("id") is not None:
            return str(data["id"])
        return None

    def _probe(self) -> None:
        self.request("GET", "/company/employees", params={"limit": 1})

    @staticmethod
    def attendance_payload(req: AttendanceRequest) -> dict:
        return {
            "employee": req.employee,
            "date": req.date.isoformat(),
            "start_time": req.start.strftime("%H:%M"),
            "end_time": req.end.strftime("%H:%M"),
            "break": 0,
            "comment": req.comment or "",
            "external_reference": req.external_reference,
        }

    @staticmethod
    def absence_payload(req: AbsenceRequest) -> dict:
        return {
            "employee_id": req.employee,
            "time_off_type_id": int(req.code),
            "start_date": req.start_date.isoformat(),
            "end_date": req.end_date.isoformat(),
            "comment": req.comment or "",
            "external_reference": req.external_reference,
        }

    def create_attendance(self, req: AttendanceRequest) -> SyncAttemptResult:
        return self.send("/company/attendances", self.attendance_payload(req), req.external_reference)

    def create_absence(self, req: AbsenceRequest) -> SyncAttemptResult:
        return self.send("/company/time-offs", self.absence_payload(req), req.external_reference)

    def create_attendances(self, reqs: list[AttendanceRequest], on_result=None) -> list[SyncAttemptResult]:
        logger.info("Creating attendance periods", extra={"count": len(reqs)})
        return self.send_all(reqs, self.create_attendance, on_result)

    def create_absences(self, reqs: list[AbsenceRequest], on_result=None) -> list[SyncAttemptResult]:
        logger.info("Creating time-off periods", extra={"count": len(reqs)})
        return self.send_all(reqs, self.create_absence, on_result)

    def get_time_off_types(self) -> list[dict]:
        """Configured time-off types as {"id", "name"} for mapping setup."""
        data = self.request("GET", "/company/time-off-types") or []
        types = []
        for item in data:
            attributes = item.get("attributes", item)
            types.append({"id": attributes.get("id"), "name": attributes.get("name")})
        return types


# ============================================================================
# SAP SuccessFactors
# ============================================================================


def iso_duration(moment: datetime) -> str:
    """Time of day as an OData duration, e.g. PT8H30M0S."""
    return f"PT{moment.hour}H{moment.minute}M0S"


def decimal_string(value: float) -> str:
    return str(round(value, 2))


class SuccessFactorsClient(ApiClient):
    """Client for the SuccessFactors OData v2 API."""

    service = "SuccessFactors"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        instance_url: str,
        company_id: str,
        timeout_ms: int = 60000,
        **kwargs,
    ):
        self.instance_url = instance_url.rstrip("/")
        super().__init__(f"{self.instance_url}/odata/v2", timeout_ms, timedelta(seconds=60), **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.company_id = company_id

    def authenticate(self) -> None:
        if self.tokens.valid():
            return

        logger.debug("Authenticating with SAP SuccessFactors")
        response = self._http(
            "POST",
            f"{self.instance_url}/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "company_id": self.company_id,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        if not response.ok:
            raise self._auth_error(response, _handle_api_error(response, self.service))

        body = _json(response)
        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthenticationError(
                f"{self.service}: Authentication failed: no access token in response", response.status_code
            )

        self.tokens.store(body["access_token"], timedelta(seconds=int(body.get("expires_in", 3600))))

    def _error_detail(self, body) -> str | None:
        if not isinstance(body, dict) or not isinstance(body.get("error"), dict):
            return None
        message = body["error"].get("message")
        if isinstance(message, dict):
            return message.get("value")
        return message

    def _unwrap(self, body):
        if isinstance(body, dict) and "d" in body:
            return body["d"]
        return body

    def _external_id(self, data) -> str | None:
        if isinstance(data, dict):
            return data.get("externalCode")
        return None

    def _probe(self) -> None:
        self.request("GET", "/User", params={"$top": 1, "$select": "userId"})

    @staticmethod
    def time_payload(req: AttendanceRequest) -> dict:
        return {
            "userId": str(req.employee),
            "startDate": req.date.isoformat(),
            "endDate": req.end.date().isoformat(),
            "startTime": iso_duration(req.start),
            "endTime": iso_duration(req.end),
            "quantityInHours": decimal_string(req.hours),
            "timeType": req.code,
            "comment": req.comment or "",
            "externalCode": req.external_reference,
        }

    @staticmethod
    def absence_payload(req: AbsenceRequest) -> dict:
        return {
            "userId": str(req.employee),
            "timeType": req.code,
            "startDate": req.start_date.isoformat(),
            "endDate": req.end_date.isoformat(),
            "quantityInDays": str(req.days),
            "comment": req.comment or "",
            "externalCode": req.external_reference,
        }

    def create_time_record(self, req: AttendanceRequest) -> SyncAttemptResult:
        return self.send("/EmployeeTime", self.time_payload(req), req.external_reference)

    def create_absence(self, req: AbsenceRequest) -> SyncAttemptResult:
        return self.send("/EmployeeTimeOff", self.absence_payload(req), req.external_reference)

    def create_time_records(self, reqs: list[AttendanceRequest], on_result=None) -> list[SyncAttemptResult]:
        return self.send_all(reqs, self.create_time_record, on_result)

    def create_absences(self, reqs: list[AbsenceRequest], on_result=None) -> list[SyncAttemptResult]:
        return self.send_all(reqs, self.create_absence, on_result)
