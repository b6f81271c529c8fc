"""Shared fixtures: a two-language registry, a scripted execution client,
a controllable clock and a service backed by a temporary local store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from labsubmit.access import Session
from labsubmit.executor import (
    BackendResponse,
    ExecutionOrchestrator,
    LanguageRegistry,
    LanguageSpec,
    RetryPolicy,
    StageReport,
)
from labsubmit.models import AssignmentType
from labsubmit.storage import LocalRecordStore
from labsubmit.submissions import SubmissionService


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def ok_response(stdout: str = "hello\n") -> BackendResponse:
    return BackendResponse(
        language="python",
        version="3.10.0",
        run=StageReport(stdout=stdout, output=stdout, code=0),
    )


class FakeClock:
    """Monotonic clock advanced by hand and by :meth:`sleep`."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class ScriptedClient:
    """Stands in for ExecutionClient.

    Each call pops the next scripted step: a BackendResponse is returned,
    an exception is raised.  ``cost`` seconds are added to the clock per
    call so durations can be asserted.
    """

    def __init__(self, steps=None, clock: Optional[FakeClock] = None, cost: float = 0.0) -> None:
        self.steps = list(steps or [])
        self.clock = clock
        self.cost = cost
        self.calls = []

    async def execute(self, spec, source_code, stdin, deadline):
        started = self.clock() if self.clock else None
        self.calls.append(
            {"spec": spec, "source": source_code, "stdin": stdin, "deadline": deadline, "started": started}
        )
        if self.clock:
            self.clock.now += self.cost
        step = self.steps.pop(0) if self.steps else ok_response()
        if isinstance(step, BaseException):
            raise step
        return step


@pytest.fixture
def registry():
    return LanguageRegistry(
        [
            LanguageSpec("python", "python", "3.10.0", "Python", "main.py"),
            LanguageSpec("javascript", "javascript", "18.15.0", "JavaScript", "main.js"),
        ]
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(clock):
    return ScriptedClient(clock=clock)


@pytest.fixture
def orchestrator(registry, client, clock):
    return ExecutionOrchestrator(registry, client, RetryPolicy(), clock=clock, sleep=clock.sleep)


class Now:
    """Settable wall clock for the service."""

    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value = self.value + timedelta(**kwargs)


@pytest.fixture
def now():
    return Now(NOW)


@pytest.fixture
def store(tmp_path):
    return LocalRecordStore(tmp_path / "records")


@pytest.fixture
def service(store, registry, orchestrator, now):
    return SubmissionService(store, registry, orchestrator, now=now)


@pytest.fixture
def hod():
    return Session.of("hod-1", "hod")


@pytest.fixture
def teacher():
    return Session.of("teacher-1", "teacher")


@pytest.fixture
def student():
    return Session.of("student-1", "student")


@pytest.fixture
def other_student():
    return Session.of("student-2", "student")


@pytest.fixture
def subject(service, hod):
    return service.create_subject(hod, "Data Structures", "CS201", ["teacher-1"], subject_id="cs201")


@pytest.fixture
def theory(service, teacher, subject):
    return service.create_assignment(
        teacher,
        subject_id=subject.id,
        title="Essay on hashing",
        deadline=NOW + timedelta(days=1),
        max_marks=10,
        assignment_id="essay",
    )


@pytest.fixture
def practical(service, teacher, subject):
    return service.create_assignment(
        teacher,
        subject_id=subject.id,
        title="Linked list",
        deadline=NOW + timedelta(days=1),
        type=AssignmentType.PRACTICAL,
        programming_language="python",
        max_marks=20,
        assignment_id="linked-list",
    )
