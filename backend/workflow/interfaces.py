"""
Collaborator interfaces consumed by the workflow core.

Storage, status sync, notification delivery, HTTP and the host system's
task/approval lists are outside the core. The engine only talks to them
through these protocols; ``db.memory`` and ``db.repositories`` provide
the storage implementations, ``integrations`` the HTTP and work-item ones.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from core.constants import InstanceStatus, LogLevel, StepStatus
from workflow.models import Step, WorkflowDefinition
from workflow.results import NotificationOutcome
from workflow.state import StepState, WorkflowInstance, WorkflowLogEntry


class DefinitionRepository(Protocol):
    async def get_by_id(self, definition_id: str) -> Optional[WorkflowDefinition]: ...

    async def get_by_code(self, workflow_code: str) -> Optional[WorkflowDefinition]: ...

    async def get_default_for_type(self, process_type: str) -> Optional[WorkflowDefinition]: ...

    async def list_by_type(self, process_type: str, active_only: bool = True) -> List[WorkflowDefinition]: ...

    async def create(self, definition: WorkflowDefinition) -> WorkflowDefinition: ...

    async def update(self, definition_id: str, updates: Dict[str, Any]) -> WorkflowDefinition: ...

    async def increment_usage_count(self, definition_id: str) -> None: ...

    async def update_success_rate(self, definition_id: str, success_rate: float) -> None: ...

    async def update_average_completion_time(self, definition_id: str, hours: float) -> None: ...


class InstanceRepository(Protocol):
    # Instances
    async def create(self, instance: WorkflowInstance) -> WorkflowInstance: ...

    async def get_by_id(self, instance_id: str) -> Optional[WorkflowInstance]: ...

    async def update(self, instance_id: str, updates: Dict[str, Any]) -> None: ...

    async def update_status(
        self, instance_id: str, status: InstanceStatus, error_message: Optional[str] = None
    ) -> None: ...

    async def update_progress(
        self,
        instance_id: str,
        current_step_id: str,
        current_step_name: str,
        completed_steps: int,
        total_steps: int,
    ) -> None: ...

    async def update_variables(self, instance_id: str, variables: Dict[str, Any]) -> None: ...

    async def set_error(self, instance_id: str, step_id: str, error_message: str) -> None: ...

    async def get_active_for_process(self, process_id: str) -> Optional[WorkflowInstance]: ...

    async def list_by_status(
        self, statuses: Iterable[InstanceStatus], limit: Optional[int] = None
    ) -> List[WorkflowInstance]: ...

    async def list_for_definition(self, definition_id: str) -> List[WorkflowInstance]: ...

    async def get_children(self, parent_instance_id: str) -> List[WorkflowInstance]: ...

    # Step states
    async def create_step_state(self, state: StepState) -> StepState: ...

    async def get_step_state(self, instance_id: str, step_id: str) -> Optional[StepState]: ...

    async def get_step_states(self, instance_id: str) -> List[StepState]: ...

    async def start_step(self, instance_id: str, step_id: str) -> None: ...

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        result: Optional[Dict[str, Any]] = None,
        output_variables: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def skip_step(self, instance_id: str, step_id: str, reason: Optional[str] = None) -> None: ...

    async def fail_step(self, instance_id: str, step_id: str, error_message: str) -> None: ...

    async def update_step_state(self, instance_id: str, step_id: str, updates: Dict[str, Any]) -> None: ...

    async def transition_step_status(
        self,
        instance_id: str,
        step_id: str,
        expected: Iterable[StepStatus],
        new_status: StepStatus,
    ) -> bool:
        """Set the step status only if it is currently one of ``expected``."""
        ...

    # Audit log
    async def add_log(
        self,
        instance_id: str,
        event: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        step_id: Optional[str] = None,
        step_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> None: ...

    async def get_logs(
        self, instance_id: str, level: Optional[LogLevel] = None, limit: Optional[int] = None
    ) -> List[WorkflowLogEntry]: ...


@runtime_checkable
class StatusSyncCallback(Protocol):
    """Pushes an instance status change to the owning process record."""

    async def __call__(self, process_id: str, status: InstanceStatus, instance_id: str) -> None: ...


class Notifier(Protocol):
    """Workflow lifecycle notifications. Implementations never raise for delivery failures."""

    async def send(
        self,
        event: str,
        recipients: Iterable[Any],
        subject: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationOutcome: ...

    async def workflow_started(self, instance: WorkflowInstance) -> NotificationOutcome: ...

    async def workflow_completed(self, instance: WorkflowInstance) -> NotificationOutcome: ...

    async def workflow_failed(self, instance: WorkflowInstance, error: str) -> NotificationOutcome: ...

    async def sla_breached(
        self,
        instance: WorkflowInstance,
        step_name: str,
        elapsed_hours: int,
        extra_recipients: Iterable[Any] = (),
    ) -> NotificationOutcome: ...


class NotificationSender(Protocol):
    """Delivery side of notifications (email, chat ...)."""

    async def send(
        self,
        event: str,
        recipients: List[str],
        subject: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None: ...


@dataclass
class HttpResponse:
    status_code: int
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpTransport(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[str] = None,
    ) -> HttpResponse: ...


class WorkItemGateway(Protocol):
    """Creates tasks and approvals in the host system's lists."""

    async def create_tasks(
        self, instance: WorkflowInstance, step: Step, request: Dict[str, Any]
    ) -> List[str]: ...

    async def create_approval(
        self, instance: WorkflowInstance, step: Step, request: Dict[str, Any]
    ) -> str: ...
