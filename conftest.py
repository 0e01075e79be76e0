"""Shared fixtures: record factories and a scripted HTTP session."""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

import pytest

from models import AbsenceRecord, WageTypeMapping, WorkPeriodRecord


# ---------------------------------------------------------------------------
# Scripted HTTP
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, reason: str = ""):
        self.status_code = status_code
        self.reason = reason or ("OK" if status_code < 400 else "Error")
        self.content = json.dumps(body).encode() if body is not None else b""

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        return json.loads(self.content)


@dataclass
class Call:
    method: str
    url: str
    timeout: float | None
    kwargs: dict = field(default_factory=dict)


class FakeSession:
    """Answers requests from per-route queues; the last answer repeats."""

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.calls: list[Call] = []

    def add(self, method: str, path: str, *answers) -> "FakeSession":
        self.routes.setdefault((method, path), []).extend(answers)
        return self

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append(Call(method, url, timeout, kwargs))
        for (route_method, path), queue in self.routes.items():
            if route_method == method and url.endswith(path):
                answer = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(answer, Exception):
                    raise answer
                return answer
        raise AssertionError(f"Unexpected request: {method} {url}")

    def calls_to(self, path: str) -> list[Call]:
        return [c for c in self.calls if c.url.endswith(path)]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sleeps():
    """Records requested sleeps instead of sleeping."""
    return []


@pytest.fixture
def client_options(session, sleeps):
    return {"session": session, "sleep": sleeps.append}


def personio_ok(data=None) -> FakeResponse:
    return FakeResponse(200, {"success": True, "data": data if data is not None else {"id": 1}})


@pytest.fixture
def personio_session(session):
    session.add("POST", "/v1/auth", personio_ok({"token": "tok-1"}))
    return session


@pytest.fixture
def sf_session(session):
    session.add(
        "POST",
        "/oauth/token",
        FakeResponse(200, {"access_token": "sf-tok", "token_type": "Bearer", "expires_in": 3600}),
    )
    return session


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@pytest.fixture
def make_period():
    def factory(
        id="wp_1",
        employee_id="emp_1",
        day=date(2026, 1, 10),
        minutes=240,
        start_hour=8,
        **overrides,
    ) -> WorkPeriodRecord:
        start = datetime(day.year, day.month, day.day, start_hour, 0)
        values = dict(
            id=id,
            employee_id=employee_id,
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            duration_minutes=minutes,
            employee_number="1001",
        )
        values.update(overrides)
        return WorkPeriodRecord(**values)

    return factory


@pytest.fixture
def make_absence():
    def factory(
        id="abs_1",
        employee_id="emp_1",
        start=date(2026, 1, 12),
        end=date(2026, 1, 12),
        category="vacation",
        **overrides,
    ) -> AbsenceRecord:
        values = dict(
            id=id,
            employee_id=employee_id,
            start_date=start,
            end_date=end,
            absence_category_id=category,
            absence_category_name="Urlaub",
            employee_number="1001",
        )
        values.update(overrides)
        return AbsenceRecord(**values)

    return factory


@pytest.fixture
def make_mapping():
    counter = iter(range(1, 1000))

    def factory(**fields) -> WageTypeMapping:
        fields.setdefault("id", f"map_{next(counter)}")
        return WageTypeMapping(**fields)

    return factory
