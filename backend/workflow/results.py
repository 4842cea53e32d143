"""Result and context types passed between the engine and step handlers."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.constants import InstanceStatus, NextAction, WaitItemType
from workflow.models import Step
from workflow.state import StepState, WorkflowInstance


# ─── Handler input ─────────────────────────────────────────────────────


def evaluation_view(
    process: Dict[str, Any],
    variables: Dict[str, Any],
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Flat view used for conditions and templates.

    Process fields and variables are reachable both unprefixed
    (``department``) and namespaced (``process.department``,
    ``variables.laptop``); variables win over process fields of the same name.
    """
    view: Dict[str, Any] = {**process, **variables, **(extra or {})}
    view["process"] = process
    view["variables"] = variables
    return view


@dataclass
class ActionContext:
    """Everything a handler may read while executing one step."""

    instance: WorkflowInstance
    step: Step
    step_state: Optional[StepState] = None
    process: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)

    def evaluation_view(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return evaluation_view(self.process, self.variables, extra)

    def scoped(self, step: Step, variables: Dict[str, Any]) -> "ActionContext":
        """Copy for an inner/branch step with its own variable overlay."""
        return ActionContext(
            instance=self.instance,
            step=step,
            step_state=None,
            process=self.process,
            variables=variables,
        )


# ─── Handler output ────────────────────────────────────────────────────


@dataclass
class ActionResult:
    """Outcome of executing a single step's action."""

    success: bool
    next_action: NextAction = NextAction.CONTINUE
    error: Optional[str] = None
    output_variables: Dict[str, Any] = field(default_factory=dict)
    wait_for_item_type: Optional[WaitItemType] = None
    task_ids: List[str] = field(default_factory=list)
    approval_ids: List[str] = field(default_factory=list)
    redirect_to_step_id: Optional[str] = None
    skip_step: bool = False
    retry_attempt: Optional[int] = None
    next_retry_at: Optional[datetime] = None

    @classmethod
    def ok(cls, outputs: Optional[Dict[str, Any]] = None, **kwargs) -> "ActionResult":
        return cls(success=True, output_variables=outputs or {}, **kwargs)

    @classmethod
    def fail(cls, error: str, outputs: Optional[Dict[str, Any]] = None, **kwargs) -> "ActionResult":
        return cls(
            success=False,
            next_action=NextAction.ERROR,
            error=error,
            output_variables=outputs or {},
            **kwargs,
        )

    @classmethod
    def wait(
        cls,
        item_type: WaitItemType,
        outputs: Optional[Dict[str, Any]] = None,
        task_ids: Optional[List[str]] = None,
        approval_ids: Optional[List[str]] = None,
    ) -> "ActionResult":
        return cls(
            success=True,
            next_action=NextAction.WAIT,
            output_variables=outputs or {},
            wait_for_item_type=item_type,
            task_ids=list(task_ids or []),
            approval_ids=list(approval_ids or []),
        )

    @property
    def is_wait(self) -> bool:
        return self.next_action == NextAction.WAIT

    @property
    def is_retry_scheduled(self) -> bool:
        return self.next_retry_at is not None


@dataclass
class ExecutionResult:
    """What engine operations return to their caller."""

    success: bool
    instance_id: str
    status: InstanceStatus
    next_action: NextAction
    current_step_id: Optional[str] = None
    current_step_name: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "instance_id": self.instance_id,
            "status": self.status.value,
            "next_action": self.next_action.value,
            "current_step_id": self.current_step_id,
            "current_step_name": self.current_step_name,
            "message": self.message,
            "error": self.error,
            "outputs": self.outputs,
        }


@dataclass
class NotificationOutcome:
    """Record of a best-effort notification: attempted, and what happened."""

    event: str
    attempted: bool = True
    delivered: bool = False
    recipients: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def skipped(cls, event: str, reason: str) -> "NotificationOutcome":
        return cls(event=event, attempted=False, error=reason)
