"""
SQLAlchemy repositories for definitions, instances, step states and logs.

Each call runs in its own short transaction on a session from the
factory, and returns detached workflow records (pydantic definitions and
state dataclasses), never ORM rows.
"""

from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ACTIVE_STATUSES, InstanceStatus, LogLevel, StepStatus, StepType
from core.exceptions import NotFoundError
from db.models import (
    WorkflowDefinitionModel,
    WorkflowInstanceModel,
    WorkflowLogModel,
    WorkflowStepStateModel,
)
from workflow.models import WorkflowDefinition
from workflow.state import StepState, WorkflowInstance, WorkflowLogEntry, new_id, utcnow

logger = structlog.get_logger(__name__)

_INSTANCE_COLUMNS = {
    "title", "status", "current_step_id", "current_step_name", "total_steps",
    "completed_steps", "progress_percentage", "context", "variables", "started_date",
    "estimated_completion_date", "completed_date", "error_message", "error_step_id",
    "started_by_user_id",
}
_STEP_STATE_COLUMNS = {
    "step_name", "step_type", "order", "status", "retry_count", "error_message",
    "started_date", "completed_date", "next_retry_at", "result", "output_variables",
    "task_assignment_ids", "approval_ids",
}


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class _SqlRepository:

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self):
        async with self._session_factory() as session:
            async with session.begin():
                yield session


# ─── Definitions ───────────────────────────────────────────────────────


def _definition_from_row(row: WorkflowDefinitionModel) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({
        "id": row.id,
        "title": row.title,
        "workflow_code": row.workflow_code,
        "description": row.description,
        "version": row.version,
        "process_type": row.process_type,
        "is_active": row.is_active,
        "is_default": row.is_default,
        "steps": row.steps or [],
        "variables": row.variables or [],
        "trigger_conditions": row.trigger_conditions or [],
        "estimated_duration_hours": row.estimated_duration_hours,
        "usage_count": row.usage_count or 0,
        "success_rate": row.success_rate,
        "average_completion_hours": row.average_completion_hours,
    })


def _definition_columns(definition: WorkflowDefinition) -> Dict[str, Any]:
    return {
        "title": definition.title,
        "workflow_code": definition.workflow_code,
        "description": definition.description,
        "version": definition.version,
        "process_type": definition.process_type,
        "is_active": definition.is_active,
        "is_default": definition.is_default,
        "steps": [step.to_dict() for step in definition.steps],
        "variables": [variable.to_dict() for variable in definition.variables],
        "trigger_conditions": [trigger.to_dict() for trigger in definition.trigger_conditions],
        "estimated_duration_hours": definition.estimated_duration_hours,
        "usage_count": definition.usage_count,
        "success_rate": definition.success_rate,
        "average_completion_hours": definition.average_completion_hours,
    }


class SqlDefinitionRepository(_SqlRepository):
    """Definition storage; steps are kept as camelCase JSON."""

    async def _row(self, session: AsyncSession, definition_id: str) -> WorkflowDefinitionModel:
        row = await session.get(WorkflowDefinitionModel, str(definition_id))
        if row is None:
            raise NotFoundError(f"Workflow definition {definition_id} not found")
        return row

    async def get_by_id(self, definition_id: str) -> Optional[WorkflowDefinition]:
        async with self._transaction() as session:
            row = await session.get(WorkflowDefinitionModel, str(definition_id))
            return _definition_from_row(row) if row else None

    async def get_by_code(self, workflow_code: str) -> Optional[WorkflowDefinition]:
        query = (
            select(WorkflowDefinitionModel)
            .where(WorkflowDefinitionModel.workflow_code == workflow_code)
            .order_by(WorkflowDefinitionModel.is_active.desc(), WorkflowDefinitionModel.version.desc())
            .limit(1)
        )
        async with self._transaction() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return _definition_from_row(row) if row else None

    async def get_default_for_type(self, process_type: str) -> Optional[WorkflowDefinition]:
        query = (
            select(WorkflowDefinitionModel)
            .where(
                WorkflowDefinitionModel.process_type == process_type,
                WorkflowDefinitionModel.is_default == True,  # noqa: E712
                WorkflowDefinitionModel.is_active == True,  # noqa: E712
            )
            .order_by(WorkflowDefinitionModel.version.desc())
            .limit(1)
        )
        async with self._transaction() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return _definition_from_row(row) if row else None

    async def list_by_type(self, process_type: str, active_only: bool = True) -> List[WorkflowDefinition]:
        query = select(WorkflowDefinitionModel).where(WorkflowDefinitionModel.process_type == process_type)
        if active_only:
            query = query.where(WorkflowDefinitionModel.is_active == True)  # noqa: E712
        query = query.order_by(WorkflowDefinitionModel.title, WorkflowDefinitionModel.version)
        async with self._transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_definition_from_row(row) for row in rows]

    async def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        row = WorkflowDefinitionModel(id=definition.id or new_id(), **_definition_columns(definition))
        async with self._transaction() as session:
            session.add(row)
            await session.flush()
            created = _definition_from_row(row)
        logger.info("Workflow definition stored", definition_id=created.id, workflow_code=created.workflow_code)
        return created

    async def update(self, definition_id: str, updates: Dict[str, Any]) -> WorkflowDefinition:
        async with self._transaction() as session:
            row = await self._row(session, definition_id)
            data = _definition_from_row(row).model_dump()
            data.update(updates)
            data["id"] = row.id
            merged = WorkflowDefinition.model_validate(data)
            for key, value in _definition_columns(merged).items():
                setattr(row, key, value)
            await session.flush()
            return _definition_from_row(row)

    async def increment_usage_count(self, definition_id: str) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(WorkflowDefinitionModel)
                .where(WorkflowDefinitionModel.id == str(definition_id))
                .values(usage_count=WorkflowDefinitionModel.usage_count + 1)
            )

    async def update_success_rate(self, definition_id: str, success_rate: float) -> None:
        async with self._transaction() as session:
            (await self._row(session, definition_id)).success_rate = success_rate

    async def update_average_completion_time(self, definition_id: str, hours: float) -> None:
        async with self._transaction() as session:
            (await self._row(session, definition_id)).average_completion_hours = hours


# ─── Instances ─────────────────────────────────────────────────────────


def _instance_from_row(row: WorkflowInstanceModel) -> WorkflowInstance:
    return WorkflowInstance(
        id=row.id,
        definition_id=row.definition_id,
        process_id=row.process_id,
        title=row.title or "",
        status=InstanceStatus(row.status),
        current_step_id=row.current_step_id,
        current_step_name=row.current_step_name,
        total_steps=row.total_steps or 0,
        completed_steps=row.completed_steps or 0,
        progress_percentage=row.progress_percentage or 0,
        context=dict(row.context or {}),
        variables=dict(row.variables or {}),
        started_date=row.started_date,
        estimated_completion_date=row.estimated_completion_date,
        completed_date=row.completed_date,
        error_message=row.error_message,
        error_step_id=row.error_step_id,
        started_by_user_id=row.started_by_user_id,
    )


def _step_state_from_row(row: WorkflowStepStateModel) -> StepState:
    return StepState(
        id=row.id,
        instance_id=row.instance_id,
        step_id=row.step_id,
        step_name=row.step_name or "",
        step_type=StepType(row.step_type) if row.step_type else None,
        order=row.order or 0,
        status=StepStatus(row.status),
        retry_count=row.retry_count or 0,
        error_message=row.error_message,
        started_date=row.started_date,
        completed_date=row.completed_date,
        next_retry_at=row.next_retry_at,
        result=dict(row.result or {}),
        output_variables=dict(row.output_variables or {}),
        task_assignment_ids=list(row.task_assignment_ids or []),
        approval_ids=list(row.approval_ids or []),
    )


def _log_from_row(row: WorkflowLogModel) -> WorkflowLogEntry:
    return WorkflowLogEntry(
        id=row.id,
        instance_id=row.instance_id,
        event=row.event,
        message=row.message,
        level=LogLevel(row.level),
        step_id=row.step_id,
        step_name=row.step_name,
        data=dict(row.data or {}),
        user_id=row.user_id,
        timestamp=row.timestamp,
    )


class SqlInstanceRepository(_SqlRepository):
    """Instance, step state and audit log storage.

    Step status changes that can race (task callbacks against the poller)
    go through ``transition_step_status``, a conditional UPDATE whose
    rowcount tells the caller whether it won.
    """

    async def _row(self, session: AsyncSession, instance_id: str) -> WorkflowInstanceModel:
        row = await session.get(WorkflowInstanceModel, instance_id)
        if row is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        return row

    async def _state_row(self, session: AsyncSession, instance_id: str, step_id: str) -> Optional[WorkflowStepStateModel]:
        query = select(WorkflowStepStateModel).where(
            WorkflowStepStateModel.instance_id == instance_id,
            WorkflowStepStateModel.step_id == step_id,
        )
        return (await session.execute(query)).scalar_one_or_none()

    async def _require_state_row(self, session: AsyncSession, instance_id: str, step_id: str) -> WorkflowStepStateModel:
        row = await self._state_row(session, instance_id, step_id)
        if row is None:
            raise NotFoundError(f"Step state {step_id} of instance {instance_id} not found")
        return row

    # ─── Instances ───

    async def create(self, instance: WorkflowInstance) -> WorkflowInstance:
        row = WorkflowInstanceModel(
            id=instance.id,
            definition_id=instance.definition_id,
            process_id=instance.process_id,
            parent_instance_id=instance.parent_instance_id,
            **{key: _plain(getattr(instance, key)) for key in _INSTANCE_COLUMNS},
        )
        async with self._transaction() as session:
            session.add(row)
            await session.flush()
            return _instance_from_row(row)

    async def get_by_id(self, instance_id: str) -> Optional[WorkflowInstance]:
        async with self._transaction() as session:
            row = await session.get(WorkflowInstanceModel, instance_id)
            return _instance_from_row(row) if row else None

    async def update(self, instance_id: str, updates: Dict[str, Any]) -> None:
        async with self._transaction() as session:
            row = await self._row(session, instance_id)
            for key, value in updates.items():
                if key in _INSTANCE_COLUMNS:
                    setattr(row, key, _plain(value))
            if "context" in updates:
                row.parent_instance_id = (updates["context"] or {}).get("parentWorkflowInstanceId")

    async def update_status(
        self, instance_id: str, status: InstanceStatus, error_message: Optional[str] = None
    ) -> None:
        async with self._transaction() as session:
            row = await self._row(session, instance_id)
            row.status = status.value
            if error_message is not None:
                row.error_message = error_message

    async def update_progress(
        self,
        instance_id: str,
        current_step_id: str,
        current_step_name: str,
        completed_steps: int,
        total_steps: int,
    ) -> None:
        async with self._transaction() as session:
            row = await self._row(session, instance_id)
            row.current_step_id = current_step_id
            row.current_step_name = current_step_name
            row.completed_steps = completed_steps
            row.total_steps = total_steps
            row.progress_percentage = int(completed_steps * 100 / total_steps) if total_steps else 0

    async def update_variables(self, instance_id: str, variables: Dict[str, Any]) -> None:
        async with self._transaction() as session:
            row = await self._row(session, instance_id)
            # Reassign so the JSON column is flagged dirty.
            row.variables = {**(row.variables or {}), **variables}

    async def set_error(self, instance_id: str, step_id: Optional[str], error_message: str) -> None:
        async with self._transaction() as session:
            row = await self._row(session, instance_id)
            row.status = InstanceStatus.FAILED.value
            row.error_message = error_message
            row.error_step_id = step_id

    async def get_active_for_process(self, process_id: str) -> Optional[WorkflowInstance]:
        query = (
            select(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.process_id == process_id,
                WorkflowInstanceModel.status.in_([s.value for s in ACTIVE_STATUSES]),
                WorkflowInstanceModel.parent_instance_id.is_(None),
            )
            .order_by(WorkflowInstanceModel.started_date.desc())
            .limit(1)
        )
        async with self._transaction() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return _instance_from_row(row) if row else None

    async def list_by_status(
        self, statuses: Iterable[InstanceStatus], limit: Optional[int] = None
    ) -> List[WorkflowInstance]:
        query = (
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.status.in_([s.value for s in statuses]))
            .order_by(WorkflowInstanceModel.started_date)
        )
        if limit is not None:
            query = query.limit(limit)
        async with self._transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_instance_from_row(row) for row in rows]

    async def list_for_definition(self, definition_id: str) -> List[WorkflowInstance]:
        query = select(WorkflowInstanceModel).where(WorkflowInstanceModel.definition_id == str(definition_id))
        async with self._transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_instance_from_row(row) for row in rows]

    async def get_children(self, parent_instance_id: str) -> List[WorkflowInstance]:
        query = select(WorkflowInstanceModel).where(
            WorkflowInstanceModel.parent_instance_id == parent_instance_id
        )
        async with self._transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_instance_from_row(row) for row in rows]

    # ─── Step states ───

    async def create_step_state(self, state: StepState) -> StepState:
        row = WorkflowStepStateModel(
            id=state.id,
            instance_id=state.instance_id,
            step_id=state.step_id,
            **{key: _plain(getattr(state, key)) for key in _STEP_STATE_COLUMNS},
        )
        async with self._transaction() as session:
            session.add(row)
            await session.flush()
            return _step_state_from_row(row)

    async def get_step_state(self, instance_id: str, step_id: str) -> Optional[StepState]:
        async with self._transaction() as session:
            row = await self._state_row(session, instance_id, step_id)
            return _step_state_from_row(row) if row else None

    async def get_step_states(self, instance_id: str) -> List[StepState]:
        query = (
            select(WorkflowStepStateModel)
            .where(WorkflowStepStateModel.instance_id == instance_id)
            .order_by(WorkflowStepStateModel.order)
        )
        async with self._transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_step_state_from_row(row) for row in rows]

    async def start_step(self, instance_id: str, step_id: str) -> None:
        async with self._transaction() as session:
            row = await self._state_row(session, instance_id, step_id)
            if row is None:
                row = WorkflowStepStateModel(id=new_id(), instance_id=instance_id, step_id=step_id)
                session.add(row)
            row.status = StepStatus.IN_PROGRESS.value
            if row.started_date is None:
                row.started_date = utcnow()

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        result: Optional[Dict[str, Any]] = None,
        output_variables: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._transaction() as session:
            row = await self._require_state_row(session, instance_id, step_id)
            row.status = StepStatus.COMPLETED.value
            row.completed_date = utcnow()
            row.result = {**(row.result or {}), **(result or {})}
            if output_variables is not None:
                row.output_variables = dict(output_variables)

    async def skip_step(self, instance_id: str, step_id: str, reason: Optional[str] = None) -> None:
        async with self._transaction() as session:
            row = await self._require_state_row(session, instance_id, step_id)
            row.status = StepStatus.SKIPPED.value
            row.completed_date = utcnow()
            if reason:
                row.result = {**(row.result or {}), "skipReason": reason}

    async def fail_step(self, instance_id: str, step_id: str, error_message: str) -> None:
        async with self._transaction() as session:
            row = await self._require_state_row(session, instance_id, step_id)
            row.status = StepStatus.FAILED.value
            row.error_message = error_message
            row.completed_date = utcnow()

    async def update_step_state(self, instance_id: str, step_id: str, updates: Dict[str, Any]) -> None:
        async with self._transaction() as session:
            row = await self._require_state_row(session, instance_id, step_id)
            for key, value in updates.items():
                if key in _STEP_STATE_COLUMNS:
                    setattr(row, key, _plain(value))

    async def transition_step_status(
        self,
        instance_id: str,
        step_id: str,
        expected: Iterable[StepStatus],
        new_status: StepStatus,
    ) -> bool:
        values: Dict[str, Any] = {"status": new_status.value}
        if new_status.is_done or new_status == StepStatus.CANCELLED:
            values["completed_date"] = utcnow()
        statement = (
            update(WorkflowStepStateModel)
            .where(
                WorkflowStepStateModel.instance_id == instance_id,
                WorkflowStepStateModel.step_id == step_id,
                WorkflowStepStateModel.status.in_([s.value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(statement)
        won = result.rowcount == 1
        if not won:
            logger.debug(
                "Step status transition lost",
                instance_id=instance_id,
                step_id=step_id,
                new_status=new_status.value,
            )
        return won

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
        async with self._transaction() as session:
            session.add(
                WorkflowLogModel(
                    id=new_id(),
                    instance_id=instance_id,
                    event=_plain(event),
                    message=message,
                    level=_plain(level),
                    step_id=step_id,
                    step_name=step_name,
                    data=data or {},
                    user_id=user_id,
                    timestamp=utcnow(),
                )
            )

    async def get_logs(
        self, instance_id: str, level: Optional[LogLevel] = None, limit: Optional[int] = None
    ) -> List[WorkflowLogEntry]:
        query = select(WorkflowLogModel).where(WorkflowLogModel.instance_id == instance_id)
        if level is not None:
            query = query.where(WorkflowLogModel.level == level.value)
        query = query.order_by(WorkflowLogModel.timestamp.desc())
        if limit is not None:
            query = query.limit(limit)
        async with self._transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_log_from_row(row) for row in reversed(rows)]
