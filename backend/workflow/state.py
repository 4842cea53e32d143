"""
Runtime state of workflow instances.

These records are what the instance repository stores and returns. They
are plain dataclasses so both the in-memory and SQL repositories can
hand out detached copies the engine is free to mutate.
"""

import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.constants import InstanceStatus, LogLevel, StepStatus, StepType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class _Record:
    """to_dict/from_dict for the dataclasses below."""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif hasattr(value, "value"):
                data[key] = value.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class WorkflowInstance(_Record):
    """One execution of a definition against a business process."""

    definition_id: str
    process_id: str
    id: str = field(default_factory=new_id)
    title: str = ""
    status: InstanceStatus = InstanceStatus.PENDING
    current_step_id: Optional[str] = None
    current_step_name: Optional[str] = None
    total_steps: int = 0
    completed_steps: int = 0
    progress_percentage: int = 0
    context: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    started_date: Optional[datetime] = None
    estimated_completion_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    error_message: Optional[str] = None
    error_step_id: Optional[str] = None
    started_by_user_id: Optional[str] = None

    @property
    def parent_instance_id(self) -> Optional[str]:
        return self.context.get("parentWorkflowInstanceId")

    @property
    def parent_step_id(self) -> Optional[str]:
        return self.context.get("parentStepId")


@dataclass
class StepState(_Record):
    """Status of one step within one instance."""

    instance_id: str
    step_id: str
    step_name: str = ""
    step_type: Optional[StepType] = None
    order: int = 0
    status: StepStatus = StepStatus.PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    started_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    result: Dict[str, Any] = field(default_factory=dict)
    output_variables: Dict[str, Any] = field(default_factory=dict)
    task_assignment_ids: List[str] = field(default_factory=list)
    approval_ids: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    @property
    def pending_item_ids(self) -> List[str]:
        return list(self.task_assignment_ids) + list(self.approval_ids)


@dataclass
class WorkflowLogEntry(_Record):
    instance_id: str
    event: str
    message: str
    level: LogLevel = LogLevel.INFO
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)
