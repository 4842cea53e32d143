"""
In-memory repositories.

Used by the tests and by hosts that embed the workflow core without a
database. Every read returns a deep copy, so callers can mutate what they
get back without touching stored state, the same as with the SQL
repositories.
"""

import copy
from dataclasses import fields
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from core.constants import ACTIVE_STATUSES, InstanceStatus, LogLevel, StepStatus
from core.exceptions import NotFoundError
from workflow.models import WorkflowDefinition
from workflow.state import StepState, WorkflowInstance, WorkflowLogEntry, new_id, utcnow

logger = structlog.get_logger(__name__)

_INSTANCE_FIELDS = {f.name for f in fields(WorkflowInstance)}
_STEP_STATE_FIELDS = {f.name for f in fields(StepState)}


class InMemoryDefinitionRepository:

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()):
        self._items: Dict[str, WorkflowDefinition] = {}
        for definition in definitions:
            self._store(definition)

    def _store(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        stored = definition.model_copy(deep=True)
        if not stored.id:
            stored.id = new_id()
        self._items[stored.id] = stored
        return stored.model_copy(deep=True)

    def _require(self, definition_id: str) -> WorkflowDefinition:
        definition = self._items.get(str(definition_id))
        if definition is None:
            raise NotFoundError(f"Workflow definition {definition_id} not found")
        return definition

    async def get_by_id(self, definition_id: str) -> Optional[WorkflowDefinition]:
        definition = self._items.get(str(definition_id))
        return definition.model_copy(deep=True) if definition else None

    async def get_by_code(self, workflow_code: str) -> Optional[WorkflowDefinition]:
        """Latest version with this code, active versions first."""
        matches = [d for d in self._items.values() if d.workflow_code == workflow_code]
        if not matches:
            return None
        best = max(matches, key=lambda d: (d.is_active, d.version))
        return best.model_copy(deep=True)

    async def get_default_for_type(self, process_type: str) -> Optional[WorkflowDefinition]:
        for definition in self._items.values():
            if definition.process_type == process_type and definition.is_default and definition.is_active:
                return definition.model_copy(deep=True)
        return None

    async def list_by_type(self, process_type: str, active_only: bool = True) -> List[WorkflowDefinition]:
        matches = [
            d for d in self._items.values()
            if d.process_type == process_type and (d.is_active or not active_only)
        ]
        return [d.model_copy(deep=True) for d in sorted(matches, key=lambda d: (d.title, d.version))]

    async def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return self._store(definition)

    async def update(self, definition_id: str, updates: Dict[str, Any]) -> WorkflowDefinition:
        current = self._require(definition_id)
        data = current.model_dump()
        data.update(updates)
        data["id"] = current.id
        return self._store(WorkflowDefinition.model_validate(data))

    async def increment_usage_count(self, definition_id: str) -> None:
        self._require(definition_id).usage_count += 1

    async def update_success_rate(self, definition_id: str, success_rate: float) -> None:
        self._require(definition_id).success_rate = success_rate

    async def update_average_completion_time(self, definition_id: str, hours: float) -> None:
        self._require(definition_id).average_completion_hours = hours


class InMemoryInstanceRepository:
    """Instances, step states and audit logs in dicts.

    ``transition_step_status`` is a real compare-and-swap here: there is no
    await between the check and the write.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._now = clock or utcnow
        self._instances: Dict[str, WorkflowInstance] = {}
        self._step_states: Dict[Tuple[str, str], StepState] = {}
        self._logs: List[WorkflowLogEntry] = []

    # ─── Instances ───

    def _require(self, instance_id: str) -> WorkflowInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        return instance

    async def create(self, instance: WorkflowInstance) -> WorkflowInstance:
        stored = copy.deepcopy(instance)
        self._instances[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_by_id(self, instance_id: str) -> Optional[WorkflowInstance]:
        instance = self._instances.get(instance_id)
        return copy.deepcopy(instance) if instance else None

    async def update(self, instance_id: str, updates: Dict[str, Any]) -> None:
        instance = self._require(instance_id)
        for key, value in updates.items():
            if key in _INSTANCE_FIELDS and key != "id":
                setattr(instance, key, copy.deepcopy(value))

    async def update_status(
        self, instance_id: str, status: InstanceStatus, error_message: Optional[str] = None
    ) -> None:
        instance = self._require(instance_id)
        instance.status = status
        if error_message is not None:
            instance.error_message = error_message

    async def update_progress(
        self,
        instance_id: str,
        current_step_id: str,
        current_step_name: str,
        completed_steps: int,
        total_steps: int,
    ) -> None:
        instance = self._require(instance_id)
        instance.current_step_id = current_step_id
        instance.current_step_name = current_step_name
        instance.completed_steps = completed_steps
        instance.total_steps = total_steps
        instance.progress_percentage = int(completed_steps * 100 / total_steps) if total_steps else 0

    async def update_variables(self, instance_id: str, variables: Dict[str, Any]) -> None:
        self._require(instance_id).variables.update(copy.deepcopy(variables))

    async def set_error(self, instance_id: str, step_id: Optional[str], error_message: str) -> None:
        instance = self._require(instance_id)
        instance.status = InstanceStatus.FAILED
        instance.error_message = error_message
        instance.error_step_id = step_id

    async def get_active_for_process(self, process_id: str) -> Optional[WorkflowInstance]:
        for instance in self._instances.values():
            if (
                instance.process_id == process_id
                and instance.status in ACTIVE_STATUSES
                and not instance.parent_instance_id
            ):
                return copy.deepcopy(instance)
        return None

    async def list_by_status(
        self, statuses: Iterable[InstanceStatus], limit: Optional[int] = None
    ) -> List[WorkflowInstance]:
        wanted = set(statuses)
        matches = sorted(
            (i for i in self._instances.values() if i.status in wanted),
            key=lambda i: i.started_date or datetime.min.replace(tzinfo=self._now().tzinfo),
        )
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(i) for i in matches]

    async def list_for_definition(self, definition_id: str) -> List[WorkflowInstance]:
        return [copy.deepcopy(i) for i in self._instances.values() if i.definition_id == definition_id]

    async def get_children(self, parent_instance_id: str) -> List[WorkflowInstance]:
        return [
            copy.deepcopy(i) for i in self._instances.values() if i.parent_instance_id == parent_instance_id
        ]

    # ─── Step states ───

    def _state(self, instance_id: str, step_id: str) -> StepState:
        state = self._step_states.get((instance_id, step_id))
        if state is None:
            raise NotFoundError(f"Step state {step_id} of instance {instance_id} not found")
        return state

    async def create_step_state(self, state: StepState) -> StepState:
        stored = copy.deepcopy(state)
        self._step_states[(stored.instance_id, stored.step_id)] = stored
        return copy.deepcopy(stored)

    async def get_step_state(self, instance_id: str, step_id: str) -> Optional[StepState]:
        state = self._step_states.get((instance_id, step_id))
        return copy.deepcopy(state) if state else None

    async def get_step_states(self, instance_id: str) -> List[StepState]:
        states = [s for (iid, _), s in self._step_states.items() if iid == instance_id]
        return [copy.deepcopy(s) for s in sorted(states, key=lambda s: s.order)]

    async def start_step(self, instance_id: str, step_id: str) -> None:
        state = self._step_states.get((instance_id, step_id))
        if state is None:
            state = StepState(instance_id=instance_id, step_id=step_id)
            self._step_states[(instance_id, step_id)] = state
        state.status = StepStatus.IN_PROGRESS
        if state.started_date is None:
            state.started_date = self._now()

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        result: Optional[Dict[str, Any]] = None,
        output_variables: Optional[Dict[str, Any]] = None,
    ) -> None:
        state = self._state(instance_id, step_id)
        state.status = StepStatus.COMPLETED
        state.completed_date = self._now()
        state.result.update(copy.deepcopy(result or {}))
        if output_variables is not None:
            state.output_variables = copy.deepcopy(output_variables)

    async def skip_step(self, instance_id: str, step_id: str, reason: Optional[str] = None) -> None:
        state = self._state(instance_id, step_id)
        state.status = StepStatus.SKIPPED
        state.completed_date = self._now()
        if reason:
            state.result["skipReason"] = reason

    async def fail_step(self, instance_id: str, step_id: str, error_message: str) -> None:
        state = self._state(instance_id, step_id)
        state.status = StepStatus.FAILED
        state.error_message = error_message
        state.completed_date = self._now()

    async def update_step_state(self, instance_id: str, step_id: str, updates: Dict[str, Any]) -> None:
        state = self._state(instance_id, step_id)
        for key, value in updates.items():
            if key in _STEP_STATE_FIELDS and key not in ("id", "instance_id", "step_id"):
                setattr(state, key, copy.deepcopy(value))

    async def transition_step_status(
        self,
        instance_id: str,
        step_id: str,
        expected: Iterable[StepStatus],
        new_status: StepStatus,
    ) -> bool:
        state = self._step_states.get((instance_id, step_id))
        if state is None or state.status not in set(expected):
            return False
        state.status = new_status
        if new_status.is_done or new_status == StepStatus.CANCELLED:
            state.completed_date = self._now()
        return True

    # ─── Audit log ───

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
    ) -> None:
        self._logs.append(
            WorkflowLogEntry(
                instance_id=instance_id,
                event=event,
                message=message,
                level=level,
                step_id=step_id,
                step_name=step_name,
                data=copy.deepcopy(data or {}),
                user_id=user_id,
                timestamp=self._now(),
            )
        )

    async def get_logs(
        self, instance_id: str, level: Optional[LogLevel] = None, limit: Optional[int] = None
    ) -> List[WorkflowLogEntry]:
        entries = [e for e in self._logs if e.instance_id == instance_id and (level is None or e.level == level)]
        if limit is not None:
            entries = entries[-limit:]
        return [copy.deepcopy(e) for e in entries]
