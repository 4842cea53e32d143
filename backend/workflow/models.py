"""
Workflow definition model.

A definition is an ordered list of steps forming a directed graph. Each
step type carries its own configuration model; ``Step.config`` is parsed
into the model matching ``Step.type`` so handlers never deal with a bag of
optional fields shared by every type.

Definitions are exchanged with the host system in camelCase JSON
(``onComplete``, ``taskTemplateId`` ...); fields are snake_case here and
accept either spelling.
"""

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from core.constants import (
    ConditionLogic,
    ConditionOperator,
    ErrorAction,
    StepType,
    TimeoutAction,
    TransitionType,
    WaitCondition,
)


class WorkflowModel(BaseModel):
    """Base for definition models: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ─── Conditions ────────────────────────────────────────────────────────


class Condition(WorkflowModel):
    id: str = ""
    field: str = Field(default="", description="Dot path into the evaluation context")
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    value_field: Optional[str] = Field(default=None, description="Compare against another field")


class ConditionGroup(WorkflowModel):
    conditions: List[Condition] = Field(default_factory=list)
    logic: ConditionLogic = ConditionLogic.AND


# ─── Transitions ───────────────────────────────────────────────────────


class Branch(WorkflowModel):
    name: str = ""
    conditions: List[ConditionGroup] = Field(default_factory=list)
    target_step_id: str = ""
    is_default: bool = False

    @property
    def has_conditions(self) -> bool:
        return any(group.conditions for group in self.conditions)


class Transition(WorkflowModel):
    type: TransitionType = TransitionType.NEXT
    target_step_id: Optional[str] = None
    branches: List[Branch] = Field(default_factory=list)
    parallel_step_ids: List[str] = Field(default_factory=list)


class ErrorConfig(WorkflowModel):
    """Per-step failure policy."""

    action: ErrorAction = ErrorAction.FAIL
    retry_count: int = 3
    retry_delay_minutes: float = 1
    retry_backoff_multiplier: float = 2
    goto_step_id: Optional[str] = None
    notify_on_error: List[str] = Field(default_factory=list, description="Emails to notify")


# ─── Step configuration (one model per step type) ──────────────────────


class StepConfig(WorkflowModel):
    """Configuration shared by every step type (Start, End and unknown types use it as-is)."""

    on_error: Optional[ErrorConfig] = None


class TaskConfig(StepConfig):
    """CreateTask / AssignTasks."""

    task_template_id: Optional[Union[int, str]] = None
    task_title: Optional[str] = None
    task_description: Optional[str] = None
    assignee_id: Optional[Union[int, str]] = None
    assignee_type: Optional[str] = None
    assignee_role: Optional[str] = None
    assignee_field: Optional[str] = None
    assignee_email: Optional[str] = None
    due_days_from_now: Optional[float] = None
    due_days_field: Optional[str] = None
    allow_empty_template: bool = False

    @property
    def has_assignee(self) -> bool:
        return bool(self.assignee_id or self.assignee_field or self.assignee_role or self.assignee_email)


class ApprovalConfig(StepConfig):
    approval_template_id: Optional[Union[int, str]] = None
    approval_title: Optional[str] = None
    approver_id: Optional[Union[int, str]] = None
    approver_role: Optional[str] = None
    approver_email: Optional[str] = None
    approver_field: Optional[str] = None
    due_days_from_now: Optional[float] = None

    @property
    def has_approver(self) -> bool:
        return bool(self.approver_id or self.approver_role or self.approver_email or self.approver_field)


class NotificationConfig(StepConfig):
    notification_type: Optional[str] = None
    notification_subject: Optional[str] = None
    message_template: Optional[str] = None
    recipient_ids: List[Union[int, str]] = Field(default_factory=list)
    recipient_emails: List[str] = Field(default_factory=list)
    recipient_role: Optional[str] = None
    recipient_field: Optional[str] = None

    @property
    def has_recipients(self) -> bool:
        return bool(self.recipient_ids or self.recipient_emails or self.recipient_role or self.recipient_field)


class ConditionStepConfig(StepConfig):
    condition_groups: List[ConditionGroup] = Field(default_factory=list)
    true_branch: Optional[str] = None
    false_branch: Optional[str] = None


class SetVariableConfig(StepConfig):
    variable_name: Optional[str] = None
    variable_value: Any = None
    variable_expression: Optional[str] = None


class WaitConfig(StepConfig):
    wait_hours: Optional[float] = None
    wait_until_field: Optional[str] = None


class WaitForTasksConfig(StepConfig):
    wait_for_task_ids: List[str] = Field(default_factory=list, description="Step ids whose tasks are awaited")
    wait_condition: WaitCondition = WaitCondition.ALL
    timeout_hours: Optional[float] = None
    sla_hours: Optional[float] = None
    on_timeout: TimeoutAction = TimeoutAction.ESCALATE
    escalate_to_user_ids: List[Union[int, str]] = Field(default_factory=list)
    escalate_to_emails: List[str] = Field(default_factory=list)

    @property
    def effective_timeout_hours(self) -> Optional[float]:
        return self.timeout_hours or self.sla_hours


class ParallelConfig(StepConfig):
    parallel_step_ids: List[str] = Field(default_factory=list)
    fail_on_any_error: Optional[bool] = None


class ForEachConfig(StepConfig):
    collection_path: Optional[str] = None
    item_variable: str = "item"
    index_variable: str = "index"
    inner_steps: List["Step"] = Field(default_factory=list)
    parallel_for_each: bool = False
    max_parallel: Optional[int] = None


class CallWorkflowConfig(StepConfig):
    sub_workflow_code: Optional[str] = None
    sub_workflow_id: Optional[str] = None
    input_mappings: Dict[str, str] = Field(default_factory=dict, description="child variable -> parent path")
    output_mappings: Dict[str, str] = Field(default_factory=dict, description="parent variable -> child path")
    wait_for_sub_workflow: bool = True

    @field_validator("sub_workflow_id", mode="before")
    @classmethod
    def _id_as_str(cls, value):
        return None if value is None else str(value)


class WebhookConfig(StepConfig):
    webhook_url: Optional[str] = None
    webhook_method: str = "POST"
    webhook_headers: Dict[str, str] = Field(default_factory=dict)
    webhook_body_template: Optional[str] = None
    webhook_response_variable: Optional[str] = None
    webhook_timeout: Optional[int] = Field(default=None, description="Milliseconds")


class ActionConfig(StepConfig):
    """Generic Action step: a named action type plus its own settings."""

    action_type: Optional[str] = None
    action_config: Dict[str, Any] = Field(default_factory=dict)


STEP_CONFIG_MODELS: Dict[StepType, type] = {
    StepType.START: StepConfig,
    StepType.END: StepConfig,
    StepType.CREATE_TASK: TaskConfig,
    StepType.ASSIGN_TASKS: TaskConfig,
    StepType.APPROVAL: ApprovalConfig,
    StepType.NOTIFICATION: NotificationConfig,
    StepType.CONDITION: ConditionStepConfig,
    StepType.SET_VARIABLE: SetVariableConfig,
    StepType.WAIT: WaitConfig,
    StepType.WAIT_FOR_TASKS: WaitForTasksConfig,
    StepType.PARALLEL: ParallelConfig,
    StepType.FOR_EACH: ForEachConfig,
    StepType.CALL_WORKFLOW: CallWorkflowConfig,
    StepType.WEBHOOK: WebhookConfig,
    StepType.ACTION: ActionConfig,
}

AnyStepConfig = Union[
    TaskConfig,
    ApprovalConfig,
    NotificationConfig,
    ConditionStepConfig,
    SetVariableConfig,
    WaitConfig,
    WaitForTasksConfig,
    ParallelConfig,
    ForEachConfig,
    CallWorkflowConfig,
    WebhookConfig,
    ActionConfig,
    StepConfig,
]


# ─── Steps & definitions ───────────────────────────────────────────────


class Step(WorkflowModel):
    """One node of the workflow graph."""

    id: str = ""
    name: str = ""
    description: Optional[str] = None
    type: Optional[StepType] = None
    order: int = 0
    config: StepConfig = Field(default_factory=StepConfig, validate_default=True)
    conditions: List[Condition] = Field(default_factory=list, description="Entry conditions, all must hold")
    on_complete: Optional[Transition] = None
    error_config: Optional[ErrorConfig] = None

    @field_validator("config", mode="before")
    @classmethod
    def _parse_config(cls, value, info: ValidationInfo):
        model = STEP_CONFIG_MODELS.get(info.data.get("type"), StepConfig)
        if isinstance(value, model):
            return value
        if isinstance(value, StepConfig):
            value = value.model_dump(exclude_unset=True)
        return model.model_validate(value or {})

    @field_serializer("config")
    def _dump_config(self, config: StepConfig, _info):
        return config.model_dump(by_alias=True, exclude_none=True, mode="json")

    @property
    def error_policy(self) -> Optional[ErrorConfig]:
        return self.error_config or self.config.on_error

    @property
    def transition_type(self) -> TransitionType:
        return self.on_complete.type if self.on_complete else TransitionType.NEXT


ForEachConfig.model_rebuild()


class WorkflowVariable(WorkflowModel):
    name: str
    type: str = "string"
    default_value: Any = None
    description: Optional[str] = None


class TriggerCondition(WorkflowModel):
    conditions: List[ConditionGroup] = Field(default_factory=list)
    priority: int = 0


class WorkflowDefinition(WorkflowModel):
    """A versioned workflow for one process type (Joiner, Mover, Leaver ...)."""

    id: Optional[str] = None
    title: str = ""
    workflow_code: str = ""
    description: Optional[str] = None
    version: int = 1
    process_type: str = ""
    is_active: bool = True
    is_default: bool = False
    steps: List[Step] = Field(default_factory=list)
    variables: List[WorkflowVariable] = Field(default_factory=list)
    trigger_conditions: List[TriggerCondition] = Field(default_factory=list)
    estimated_duration_hours: Optional[float] = None

    # Statistics
    usage_count: int = 0
    success_rate: Optional[float] = None
    average_completion_hours: Optional[float] = None

    @field_validator("steps", "variables", "trigger_conditions", mode="before")
    @classmethod
    def _decode_json_list(cls, value):
        if isinstance(value, str):
            return json.loads(value) if value.strip() else []
        return value

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value):
        return None if value is None else str(value)

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def step_ids(self) -> set:
        return {step.id for step in self.steps}

    @property
    def start_step(self) -> Optional[Step]:
        return next((s for s in self.steps if s.type == StepType.START), None)

    def sorted_steps(self) -> List[Step]:
        return sorted(self.steps, key=lambda s: s.order)

    def variable_defaults(self) -> Dict[str, Any]:
        return {
            variable.name: variable.default_value
            for variable in self.variables
            if variable.default_value is not None
        }


def parse_steps(raw: Union[str, List[Any], None]) -> List[Step]:
    """Parse a step list given as JSON text or a list of dicts/Steps.

    Raises:
        json.JSONDecodeError: Step JSON is malformed
        pydantic.ValidationError: A step does not match the step model
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = json.loads(raw) if raw.strip() else []
    if not isinstance(raw, list):
        raise ValueError("Steps must be a list")
    return [item if isinstance(item, Step) else Step.model_validate(item) for item in raw]
