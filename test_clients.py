"""Tests for the Personio and SuccessFactors HTTP clients."""

from datetime import date, datetime, timedelta

import pytest
import requests

from clients import (
    THROTTLE_DELAY,
    PersonioClient,
    RetryPolicy,
    SuccessFactorsClient,
    TokenCache,
    iso_duration,
)
from conftest import FakeResponse, personio_ok
from errors import AuthenticationError
from transformers import AbsenceRequest, AttendanceRequest

START = datetime(2026, 1, 10, 8, 0)


def attendance(ref="wp_1", employee=1001, hours=4.0, code=None) -> AttendanceRequest:
    return AttendanceRequest(
        external_reference=ref,
        employee_id="emp_1",
        employee=employee,
        date=START.date(),
        start=START,
        end=START + timedelta(hours=hours),
        hours=hours,
        code=code,
        comment="Regular - Website",
    )


class Clock:
    def __init__(self, now: datetime = datetime(2026, 1, 10, 12, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def personio(personio_session, client_options):
    return PersonioClient("cid", "secret", **client_options)


# ---------------------------------------------------------------------------
# TokenCache / RetryPolicy
# ---------------------------------------------------------------------------

class TestTokenCache:

    def test_refreshes_before_expiry(self):
        clock = Clock()
        cache = TokenCache(timedelta(seconds=60), clock)
        cache.store("tok", timedelta(hours=1))

        clock.now += timedelta(minutes=58, seconds=59)
        assert cache.valid()
        clock.now += timedelta(seconds=1)
        assert not cache.valid()

    def test_empty_and_cleared(self):
        cache = TokenCache(timedelta(0))
        assert not cache.valid()
        cache.store("tok", timedelta(hours=1))
        cache.clear()
        assert not cache.valid()


class TestRetryPolicy:

    def test_exponential_delays(self):
        policy = RetryPolicy()
        assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
        assert policy.max_attempts == 3
        assert policy.retryable_statuses == {408, 429, 500, 502, 503, 504}


# ---------------------------------------------------------------------------
# Personio
# ---------------------------------------------------------------------------

class TestPersonioClient:

    def test_create_attendance(self, personio, personio_session):
        personio_session.add("POST", "/company/attendances", personio_ok({"id": 77}))

        result = personio.create_attendance(attendance())

        assert result.success
        assert result.external_id == "77"
        assert result.attempts == 1
        auth, call = personio_session.calls
        assert auth.kwargs["json"] == {"client_id": "cid", "client_secret": "secret"}
        assert call.kwargs["headers"]["Authorization"] == "Bearer tok-1"
        assert call.kwargs["json"] == {
            "employee": 1001,
            "date": "2026-01-10",
            "start_time": "08:00",
            "end_time": "12:00",
            "break": 0,
            "comment": "Regular - Website",
            "external_reference": "wp_1",
        }
        assert call.timeout == 30.0

    def test_absence_payload(self):
        req = AbsenceRequest("abs_1", "emp_1", 1001, date(2026, 1, 12), date(2026, 1, 14), 3, "4711", "Urlaub")
        assert PersonioClient.absence_payload(req) == {
            "employee_id": 1001,
            "time_off_type_id": 4711,
            "start_date": "2026-01-12",
            "end_date": "2026-01-14",
            "comment": "Urlaub",
            "external_reference": "abs_1",
        }

    def test_retry_then_success(self, personio, personio_session, sleeps):
        personio_session.add(
            "POST", "/company/attendances",
            FakeResponse(503), FakeResponse(503), personio_ok({"id": 5}),
        )

        result = personio.create_attendance(attendance())

        assert result.success
        assert result.attempts == 3
        assert sleeps == [1.0, 2.0]
        assert personio.api_call_count == 4

    def test_client_error_is_not_retried(self, personio, personio_session, sleeps):
        personio_session.add(
            "POST", "/company/attendances",
            FakeResponse(400, {"success": False, "error": {"code": 400, "message": "Invalid date"}}),
        )

        result = personio.create_attendance(attendance())

        assert not result.success
        assert not result.is_retryable
        assert result.status_code == 400
        assert result.error_message == "Personio: Invalid date"
        assert len(personio_session.calls_to("/company/attendances")) == 1
        assert sleeps == []

    def test_exhausted_retries_return_failure(self, personio, personio_session):
        personio_session.add("POST", "/company/attendances", FakeResponse(503))

        result = personio.create_attendance(attendance())

        assert not result.success
        assert result.is_retryable
        assert result.attempts == 3
        assert result.error_message == "Personio: Service unavailable. Try again later."

    def test_network_error_is_retried(self, personio, personio_session):
        personio_session.add(
            "POST", "/company/attendances",
            requests.exceptions.ConnectionError("reset"), personio_ok({"id": 9}),
        )
        assert personio.create_attendance(attendance()).success

    def test_timeout_is_retried(self, personio, personio_session):
        personio_session.add(
            "POST", "/company/attendances",
            requests.exceptions.Timeout("slow"), requests.exceptions.Timeout("slow"), FakeResponse(504),
        )
        result = personio.create_attendance(attendance())
        assert not result.success
        assert result.attempts == 3

    def test_auth_failure_raises(self, session, client_options):
        session.add("POST", "/v1/auth", FakeResponse(401, {"success": False, "error": {"message": "bad"}}))
        client = PersonioClient("cid", "wrong", **client_options)

        with pytest.raises(AuthenticationError):
            client.create_attendance(attendance())

    def test_auth_server_error_is_retried(self, session, client_options):
        session.add("POST", "/v1/auth", FakeResponse(502), personio_ok({"token": "tok-1"}))
        session.add("POST", "/company/attendances", personio_ok({"id": 5}))
        client = PersonioClient("cid", "secret", **client_options)

        result = client.create_attendance(attendance())

        assert result.success
        assert len(session.calls_to("/v1/auth")) == 2

    def test_token_reused_then_refreshed(self, personio_session, client_options):
        clock = Clock()
        client = PersonioClient("cid", "secret", clock=clock, **client_options)
        personio_session.add("POST", "/company/attendances", personio_ok())

        client.create_attendance(attendance())
        client.create_attendance(attendance())
        assert len(personio_session.calls_to("/v1/auth")) == 1

        clock.now += timedelta(hours=22, minutes=55)
        client.create_attendance(attendance())
        assert len(personio_session.calls_to("/v1/auth")) == 2

    @pytest.mark.parametrize("count, expected_sleeps", [(10, 0), (11, 11)])
    def test_throttle_large_batches(self, personio, personio_session, sleeps, count, expected_sleeps):
        personio_session.add("POST", "/company/attendances", personio_ok())

        seen = []
        results = personio.create_attendances(
            [attendance(ref=f"wp_{i}") for i in range(count)],
            on_result=lambda req, result: seen.append(req.external_reference),
        )

        assert len(results) == count
        assert seen == [f"wp_{i}" for i in range(count)]
        assert sleeps == [THROTTLE_DELAY] * expected_sleeps

    def test_time_off_types(self, personio, personio_session):
        personio_session.add(
            "GET", "/company/time-off-types",
            personio_ok([{"type": "TimeOffType", "attributes": {"id": 4711, "name": "Urlaub"}}]),
        )
        assert personio.get_time_off_types() == [{"id": 4711, "name": "Urlaub"}]

    def test_connection(self, personio, personio_session):
        personio_session.add("GET", "/company/employees", personio_ok([]))
        assert personio.test_connection().success
        assert personio_session.calls[-1].kwargs["params"] == {"limit": 1}

    def test_connection_reports_auth_error(self, session, client_options):
        session.add("POST", "/v1/auth", FakeResponse(401, {}))
        result = PersonioClient("cid", "wrong", **client_options).test_connection()
        assert not result.success
        assert "Authentication failed" in result.error


# ---------------------------------------------------------------------------
# SuccessFactors
# ---------------------------------------------------------------------------

class TestSuccessFactorsClient:

    @pytest.fixture
    def client(self, sf_session, client_options):
        return SuccessFactorsClient("cid", "secret", "https://api4.successfactors.com/", "ACME", **client_options)

    def test_oauth_form(self, client, sf_session):
        sf_session.add("POST", "/odata/v2/EmployeeTime", FakeResponse(201, {"d": {"externalCode": "wp_1"}}))

        client.create_time_record(attendance(code="REG2"))

        token_call = sf_session.calls[0]
        assert token_call.url == "https://api4.successfactors.com/oauth/token"
        assert token_call.kwargs["data"] == {
            "grant_type": "client_credentials",
            "client_id": "cid",
            "client_secret": "secret",
            "company_id": "ACME",
        }
        assert token_call.timeout == 60.0

    def test_time_record_payload(self, client, sf_session):
        sf_session.add("POST", "/odata/v2/EmployeeTime", FakeResponse(201, {"d": {"externalCode": "wp_1"}}))

        result = client.create_time_record(attendance(employee="emp_1", code="REG2"))

        assert result.success
        assert result.external_id == "wp_1"
        assert sf_session.calls[-1].kwargs["json"] == {
            "userId": "emp_1",
            "startDate": "2026-01-10",
            "endDate": "2026-01-10",
            "startTime": "PT8H0M0S",
            "endTime": "PT12H0M0S",
            "quantityInHours": "4.0",
            "timeType": "REG2",
            "comment": "Regular - Website",
            "externalCode": "wp_1",
        }

    def test_absence_payload(self):
        req = AbsenceRequest("abs_1", "emp_1", "emp_1", date(2026, 1, 12), date(2026, 1, 13), 2, "TT_VAC")
        payload = SuccessFactorsClient.absence_payload(req)
        assert payload["quantityInDays"] == "2"
        assert payload["timeType"] == "TT_VAC"
        assert payload["externalCode"] == "abs_1"

    def test_odata_error_message(self, client, sf_session):
        sf_session.add(
            "POST", "/odata/v2/EmployeeTime",
            FakeResponse(400, {"error": {"code": "COE_GENERAL", "message": {"lang": "en", "value": "Invalid time type"}}}),
        )

        result = client.create_time_record(attendance(code="NOPE"))

        assert not result.success
        assert result.error_message == "SuccessFactors: Invalid time type"

    def test_empty_success_body_uses_reference(self, client, sf_session):
        sf_session.add("POST", "/odata/v2/EmployeeTimeOff", FakeResponse(204))
        req = AbsenceRequest("abs_1", "emp_1", "emp_1", date(2026, 1, 12), date(2026, 1, 12), 1, "TT_VAC")
        assert client.create_absence(req).external_id == "abs_1"

    def test_token_failure_raises(self, session, client_options):
        session.add("POST", "/oauth/token", FakeResponse(401))
        client = SuccessFactorsClient("cid", "secret", "https://api4.successfactors.com", "ACME", **client_options)
        with pytest.raises(AuthenticationError):
            client.create_time_record(attendance(code="REG2"))

    def test_token_without_access_token(self, session, client_options):
        session.add("POST", "/oauth/token", FakeResponse(200, {"token_type": "Bearer"}))
        client = SuccessFactorsClient("cid", "secret", "https://api4.successfactors.com", "ACME", **client_options)
        with pytest.raises(AuthenticationError, match="no access token"):
            client.create_time_record(attendance(code="REG2"))

    @pytest.mark.parametrize(
        "blip",
        [requests.exceptions.ConnectionError("reset"), requests.exceptions.Timeout("slow"), FakeResponse(503)],
    )
    def test_token_endpoint_blip_is_retried(self, session, client_options, sleeps, blip):
        session.add(
            "POST", "/oauth/token",
            blip, FakeResponse(200, {"access_token": "sf-tok", "expires_in": 3600}),
        )
        session.add("POST", "/odata/v2/EmployeeTime", FakeResponse(201, {"d": {"externalCode": "wp_1"}}))
        client = SuccessFactorsClient("cid", "secret", "https://api4.successfactors.com", "ACME", **client_options)

        result = client.create_time_record(attendance(code="REG2"))

        assert result.success
        assert result.attempts == 2
        assert sleeps == [1.0]

    def test_token_endpoint_down_fails_record(self, session, client_options):
        session.add("POST", "/oauth/token", FakeResponse(503))
        client = SuccessFactorsClient("cid", "secret", "https://api4.successfactors.com", "ACME", **client_options)

        result = client.create_time_record(attendance(code="REG2"))

        assert not result.success
        assert result.is_retryable
        assert result.attempts == 3
        assert result.error_message == "SuccessFactors: Service unavailable. Try again later."

    def test_connection_probe(self, client, sf_session):
        sf_session.add("GET", "/odata/v2/User", FakeResponse(200, {"d": {"results": []}}))
        assert client.test_connection().success
        assert sf_session.calls[-1].kwargs["params"] == {"$top": 1, "$select": "userId"}

    @pytest.mark.parametrize(
        "moment, expected",
        [
            (datetime(2026, 1, 10, 8, 0), "PT8H0M0S"),
            (datetime(2026, 1, 10, 17, 45), "PT17H45M0S"),
        ],
    )
    def test_iso_duration(self, moment, expected):
        assert iso_duration(moment) == expected
