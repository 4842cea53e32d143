"""Constants and enums for the workflow core.

String values match the ones stored by the host HR system so that
instances and logs remain readable by its other components.
"""

from enum import Enum


class InstanceStatus(str, Enum):
    """Workflow instance status."""

    PENDING = "Pending"
    RUNNING = "Running"
    PAUSED = "Paused"
    WAITING_FOR_INPUT = "Waiting for Input"
    WAITING_FOR_APPROVAL = "Waiting for Approval"
    WAITING_FOR_TASK = "Waiting for Task"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self in WAITING_STATUSES


TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)
WAITING_STATUSES = frozenset(
    {
        InstanceStatus.WAITING_FOR_INPUT,
        InstanceStatus.WAITING_FOR_APPROVAL,
        InstanceStatus.WAITING_FOR_TASK,
    }
)
RESUMABLE_STATUSES = WAITING_STATUSES | {InstanceStatus.PAUSED}
ACTIVE_STATUSES = RESUMABLE_STATUSES | {InstanceStatus.PENDING, InstanceStatus.RUNNING}


class StepStatus(str, Enum):
    """Per-instance status of a single step."""

    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_done(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.SKIPPED)


class StepType(str, Enum):
    """Workflow step type."""

    START = "Start"
    END = "End"
    ASSIGN_TASKS = "AssignTasks"
    CREATE_TASK = "CreateTask"
    WAIT_FOR_TASKS = "WaitForTasks"
    APPROVAL = "Approval"
    CONDITION = "Condition"
    ACTION = "Action"
    NOTIFICATION = "Notification"
    WAIT = "Wait"
    PARALLEL = "Parallel"
    SET_VARIABLE = "SetVariable"
    FOR_EACH = "ForEach"
    CALL_WORKFLOW = "CallWorkflow"
    WEBHOOK = "Webhook"


# Step types routed through the action dispatcher
ACTION_STEP_TYPES = frozenset(
    {
        StepType.CREATE_TASK,
        StepType.ASSIGN_TASKS,
        StepType.APPROVAL,
        StepType.NOTIFICATION,
        StepType.ACTION,
        StepType.SET_VARIABLE,
        StepType.WAIT,
    }
)


class TransitionType(str, Enum):
    NEXT = "next"
    GOTO = "goto"
    BRANCH = "branch"
    PARALLEL = "parallel"
    END = "end"


class ConditionOperator(str, Enum):
    """Operators supported by the condition evaluator."""

    EQUALS = "eq"
    NOT_EQUALS = "ne"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "lte"
    IS_EMPTY = "isEmpty"
    IS_NOT_EMPTY = "isNotEmpty"
    IN = "in"
    NOT_IN = "notIn"
    DATE_BEFORE = "dateBefore"
    DATE_AFTER = "dateAfter"
    DATE_EQUALS = "dateEquals"


class ConditionLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class NextAction(str, Enum):
    """What the engine should do after a handler returns."""

    CONTINUE = "continue"
    WAIT = "wait"
    COMPLETE = "complete"
    ERROR = "error"


class WaitItemType(str, Enum):
    """What a waiting step is waiting on; selects the Waiting* instance status."""

    TASK = "task"
    APPROVAL = "approval"
    INPUT = "input"
    TIME = "time"


class ErrorAction(str, Enum):
    """Per-step error policy."""

    RETRY = "retry"
    SKIP = "skip"
    FAIL = "fail"
    GOTO = "goto"


class TimeoutAction(str, Enum):
    """WaitForTasks behaviour once the timeout has elapsed."""

    ESCALATE = "escalate"
    SKIP = "skip"
    FAIL = "fail"


class WaitCondition(str, Enum):
    ALL = "all"
    ANY = "any"


class LogLevel(str, Enum):
    """Level of an instance audit log entry."""

    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"
    DEBUG = "Debug"


class LogEvent(str, Enum):
    """Events recorded in the instance audit log."""

    WORKFLOW_STARTED = "Workflow Started"
    WORKFLOW_COMPLETED = "Workflow Completed"
    WORKFLOW_FAILED = "Workflow Failed"
    WORKFLOW_PAUSED = "Workflow Paused"
    WORKFLOW_RESUMED = "Workflow Resumed"
    WORKFLOW_CANCELLED = "Workflow Cancelled"
    STEP_STARTED = "Step Started"
    STEP_COMPLETED = "Step Completed"
    STEP_SKIPPED = "Step Skipped"
    STEP_FAILED = "Step Failed"
    STEP_RETRY_SCHEDULED = "Step Retry Scheduled"
    CONDITION_EVALUATED = "Condition Evaluated"
    TRANSITION_WARNING = "Transition Warning"
    ESCALATED = "Escalated"


HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
HTTP_METHODS_WITH_BODY = ("POST", "PUT", "PATCH")

# Operation type tag used for process-status sync entries in the DLQ
PROCESS_STATUS_SYNC = "process_status_sync"
