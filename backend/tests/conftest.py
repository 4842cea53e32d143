"""Shared pytest fixtures for the workflow core test suite.

Provides:
- A controllable clock shared by the engine and the in-memory repositories
- In-memory definition/instance repositories and work item gateway
- Recording status sync callback, notification sender and HTTP transport
- A fully wired WorkflowEngine and ResumeService
- Step and definition builders (camelCase dicts, as the host stores them)
- In-memory async SQLite session factory for repository integration tests
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from app.config import get_settings  # noqa: E402
from db.database import close_db, create_session_factory, init_db  # noqa: E402
from db.memory import InMemoryDefinitionRepository, InMemoryInstanceRepository  # noqa: E402
from integrations.work_items import InMemoryWorkItemGateway  # noqa: E402
from notifications.manager import NotificationManager  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.interfaces import HttpResponse  # noqa: E402
from workflow.models import WorkflowDefinition  # noqa: E402
from workflow.resume import ResumeService  # noqa: E402
from workflow.status_sync import ProcessStatusSync  # noqa: E402


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable clock; ``advance`` moves it forward."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSyncCallback:
    """Status sync callback that records calls; the first ``failures`` calls raise."""

    def __init__(self, failures: int = 0):
        self.calls: List[tuple] = []
        self.failures = failures

    async def __call__(self, process_id, status, instance_id) -> None:
        self.calls.append((process_id, status, instance_id))
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("process service unavailable")

    @property
    def statuses(self) -> List[str]:
        return [status.value for _, status, _ in self.calls]


class RecordingSender:
    """Notification sender that keeps every delivery."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send(self, event, recipients, subject, message, data=None) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(
            {"event": event, "recipients": recipients, "subject": subject, "message": message, "data": data}
        )

    def events(self) -> List[str]:
        return [n["event"] for n in self.sent]


class StubTransport:
    """HttpTransport returning queued responses and recording requests."""

    def __init__(self, *responses: HttpResponse):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    async def request(self, method, url, headers=None, body=None) -> HttpResponse:
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body})
        if self.responses:
            return self.responses.pop(0)
        return HttpResponse(status_code=200, text='{"ok": true}')


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_step(step_id: str, step_type: str, order: int, name: Optional[str] = None, **extra) -> Dict[str, Any]:
    return {"id": step_id, "name": name or step_id.replace("_", " ").title(), "type": step_type, "order": order, **extra}


def make_definition(steps: List[Dict[str, Any]], **overrides) -> WorkflowDefinition:
    data: Dict[str, Any] = {
        "id": "def-joiner",
        "title": "Joiner Onboarding",
        "workflowCode": "JOINER",
        "processType": "Joiner",
        "isActive": True,
        "isDefault": True,
        "steps": steps,
    }
    data.update(overrides)
    return WorkflowDefinition.model_validate(data)


APPROVER = {"approverRole": "manager"}


def approval_flow(**overrides) -> WorkflowDefinition:
    """Start -> Manager Approval -> End."""
    return make_definition(
        [
            make_step("start", "Start", 1),
            make_step("approve", "Approval", 2, "Manager Approval", config=APPROVER),
            make_step("end", "End", 3),
        ],
        **overrides,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def definitions() -> InMemoryDefinitionRepository:
    return InMemoryDefinitionRepository()


@pytest.fixture
def instances(clock) -> InMemoryInstanceRepository:
    return InMemoryInstanceRepository(clock=clock)


@pytest.fixture
def work_items() -> InMemoryWorkItemGateway:
    return InMemoryWorkItemGateway(templates={"101": ["Create AD account", "Order laptop"]})


@pytest.fixture
def sync_callback() -> RecordingSyncCallback:
    return RecordingSyncCallback()


@pytest.fixture
def status_sync(sync_callback) -> ProcessStatusSync:
    return ProcessStatusSync(callback=sync_callback, sleep=no_sleep)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def notifier(sender) -> NotificationManager:
    return NotificationManager(sender)


@pytest.fixture
def transport() -> StubTransport:
    return StubTransport()


@pytest.fixture
def engine(definitions, instances, status_sync, notifier, transport, work_items, settings, clock) -> WorkflowEngine:
    return WorkflowEngine(
        definitions,
        instances,
        status_sync=status_sync,
        notifier=notifier,
        transport=transport,
        work_items=work_items,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def resume(engine, instances, definitions, clock) -> ResumeService:
    return ResumeService(engine, instances, definitions, clock=clock)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    db_engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool, echo=False)
    await init_db(db_engine)

    yield create_session_factory(db_engine)

    await close_db(db_engine)
