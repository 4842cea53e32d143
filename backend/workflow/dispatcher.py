"""
Action dispatcher.

Executes the "action" step types: CreateTask, AssignTasks, Approval,
Notification, SetVariable, Wait, Webhook and the generic Action step. The
generic step names an ``actionType``; built-in action types are mapped to
the step type they behave like, anything else is looked up in the
registry of custom action handlers.

Usage:
    dispatcher = ActionDispatcher(work_items=gateway, notifier=notifier, webhook=webhook)
    dispatcher.register("ProvisionLaptop", provision_laptop)
    result = await dispatcher.dispatch(context)
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from core.constants import StepType, WaitItemType
from notifications.manager import NotificationManager
from workflow.conditions import ConditionEvaluator, resolve_path, to_datetime
from workflow.handlers.webhook import WebhookHandler
from workflow.interfaces import WorkItemGateway
from workflow.models import (
    ActionConfig,
    ApprovalConfig,
    NotificationConfig,
    SetVariableConfig,
    Step,
    TaskConfig,
    WaitConfig,
)
from workflow.results import ActionContext, ActionResult
from workflow.state import utcnow

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[Dict[str, Any], ActionContext], Awaitable[ActionResult]]

# Built-in actionType values and the step type each one runs as
BUILTIN_ACTIONS: Dict[str, StepType] = {
    "CreateTask": StepType.CREATE_TASK,
    "AssignTasksFromTemplate": StepType.ASSIGN_TASKS,
    "CreateApproval": StepType.APPROVAL,
    "SendNotification": StepType.NOTIFICATION,
    "SendEmail": StepType.NOTIFICATION,
    "SetVariable": StepType.SET_VARIABLE,
    "Wait": StepType.WAIT,
    "CallWebhook": StepType.WEBHOOK,
}

# Role name -> context fields holding the person's id and email
ROLE_FIELDS: Dict[str, tuple] = {
    "manager": ("managerId", "managerEmail"),
    "employee": ("employeeId", "employeeEmail"),
    "hr": ("hrContactId", "hrContactEmail"),
    "it": ("itContactId", "itContactEmail"),
}

DISPATCHED_STEP_TYPES = frozenset(
    {
        StepType.CREATE_TASK,
        StepType.ASSIGN_TASKS,
        StepType.APPROVAL,
        StepType.NOTIFICATION,
        StepType.SET_VARIABLE,
        StepType.WAIT,
        StepType.WEBHOOK,
        StepType.ACTION,
    }
)


class ActionDispatcher:

    def __init__(
        self,
        work_items: Optional[WorkItemGateway] = None,
        notifier: Optional[NotificationManager] = None,
        webhook: Optional[WebhookHandler] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.work_items = work_items
        self.notifier = notifier or NotificationManager()
        self.webhook = webhook
        self.evaluator = evaluator or ConditionEvaluator()
        self._now = clock or utcnow
        self._actions: Dict[str, ActionHandler] = {}

    def register(self, action_type: str, handler: ActionHandler) -> None:
        """Register a custom handler for Action steps with this ``actionType``."""
        self._actions[action_type] = handler

    @property
    def available_actions(self) -> List[str]:
        return sorted(set(BUILTIN_ACTIONS) | set(self._actions))

    def handles(self, step_type: Optional[StepType]) -> bool:
        return step_type in DISPATCHED_STEP_TYPES

    async def dispatch(self, context: ActionContext) -> ActionResult:
        """Run the step's action. Exceptions become failed results."""
        step = context.step
        try:
            return await self._dispatch(context)
        except Exception as e:
            logger.error("Action failed", step_id=step.id, step_type=getattr(step.type, "value", None), error=str(e))
            return ActionResult.fail(str(e) or type(e).__name__)

    async def _dispatch(self, context: ActionContext) -> ActionResult:
        step_type = context.step.type
        if step_type == StepType.CREATE_TASK:
            return await self.create_task(context)
        if step_type == StepType.ASSIGN_TASKS:
            return await self.assign_tasks(context)
        if step_type == StepType.APPROVAL:
            return await self.create_approval(context)
        if step_type == StepType.NOTIFICATION:
            return await self.send_notification(context)
        if step_type == StepType.SET_VARIABLE:
            return self.set_variable(context)
        if step_type == StepType.WAIT:
            return self.wait(context)
        if step_type == StepType.WEBHOOK:
            if self.webhook is None:
                return ActionResult.fail("No HTTP transport configured for webhook steps")
            return await self.webhook.execute(context)
        if step_type == StepType.ACTION:
            return await self.run_action(context)
        return ActionResult.fail(f"Unknown step type: {getattr(step_type, 'value', step_type)}")

    # ─── Generic Action step ───

    async def run_action(self, context: ActionContext) -> ActionResult:
        config: ActionConfig = context.step.config
        action_type = config.action_type
        if not action_type:
            return ActionResult.fail("Action type not specified")

        if action_type in self._actions:
            return await self._actions[action_type](dict(config.action_config), context)

        step_type = BUILTIN_ACTIONS.get(action_type)
        if step_type is None:
            return ActionResult.fail(f"Unknown action type: {action_type}")

        as_step = Step(
            id=context.step.id,
            name=context.step.name,
            description=context.step.description,
            type=step_type,
            order=context.step.order,
            config=config.action_config,
        )
        scoped = context.scoped(as_step, context.variables)
        scoped.step_state = context.step_state
        return await self._dispatch(scoped)

    # ─── Tasks & approvals ───

    async def create_task(self, context: ActionContext) -> ActionResult:
        config: TaskConfig = context.step.config
        view = context.evaluation_view()
        assignee = self._person(view, config.assignee_id, config.assignee_field, config.assignee_email, config.assignee_role)
        if assignee is None:
            return ActionResult.fail("Task assignee not specified")
        if self.work_items is None:
            return ActionResult.fail("No work item gateway configured")

        title = self.evaluator.replace_tokens(config.task_title, view) or f"Task for {context.step.name}"
        request = self._task_request(context, config, view, title, assignee)
        task_ids = await self.work_items.create_tasks(context.instance, context.step, request)
        if not task_ids:
            return ActionResult.fail("No task was created")

        return ActionResult.wait(
            WaitItemType.TASK,
            {"createdTaskId": task_ids[0], "createdTaskTitle": title, "tasksCreated": len(task_ids)},
            task_ids=task_ids,
        )

    async def assign_tasks(self, context: ActionContext) -> ActionResult:
        """Template tasks (waits on them) or a single role task (continues)."""
        config: TaskConfig = context.step.config
        view = context.evaluation_view()
        if self.work_items is None:
            return ActionResult.fail("No work item gateway configured")

        if config.task_template_id is None and not config.has_assignee:
            logger.warning("AssignTasks step has neither template nor assignee; nothing to create", step_id=context.step.id)
            return ActionResult.ok({"tasksCreated": 0, "skipped": True})

        assignee = self._person(view, config.assignee_id, config.assignee_field, config.assignee_email, config.assignee_role)
        title = self.evaluator.replace_tokens(config.task_title, view) or context.step.name
        request = self._task_request(context, config, view, title, assignee)
        task_ids = await self.work_items.create_tasks(context.instance, context.step, request)

        if config.task_template_id is None:
            return ActionResult.ok(
                {
                    "tasksCreated": len(task_ids),
                    "createdTaskId": task_ids[0] if task_ids else None,
                    "createdTaskTitle": title,
                    "assigneeRole": config.assignee_role,
                },
                task_ids=task_ids,
            )

        if not task_ids:
            if not config.allow_empty_template:
                return ActionResult.fail(
                    f"Task template {config.task_template_id} has no tasks configured. "
                    "Configure tasks in the template or set allowEmptyTemplate: true if this is intentional."
                )
            return ActionResult.ok({"tasksCreated": 0, "templateEmpty": True})

        return ActionResult.wait(
            WaitItemType.TASK,
            {"tasksCreated": len(task_ids), "createdTaskIds": task_ids},
            task_ids=task_ids,
        )

    def _task_request(self, context: ActionContext, config: TaskConfig, view, title: str, assignee) -> Dict[str, Any]:
        due_days = config.due_days_from_now
        if due_days is None and config.due_days_field:
            due_days = resolve_path(config.due_days_field, view)
        due_date = self._now() + timedelta(days=float(due_days)) if due_days not in (None, "") else None

        return {
            "title": title,
            "description": self.evaluator.replace_tokens(config.task_description, view) or context.step.description,
            "assignee": assignee,
            "assignee_role": config.assignee_role,
            "template_id": config.task_template_id,
            "due_date": due_date,
            "process_id": context.instance.process_id,
        }

    async def create_approval(self, context: ActionContext) -> ActionResult:
        config: ApprovalConfig = context.step.config
        view = context.evaluation_view()
        approver = self._person(view, config.approver_id, config.approver_field, config.approver_email, config.approver_role)
        if approver is None:
            return ActionResult.fail("Approver not specified")
        if self.work_items is None:
            return ActionResult.fail("No work item gateway configured")

        due_date = None
        if config.due_days_from_now:
            due_date = self._now() + timedelta(days=config.due_days_from_now)

        approval_id = await self.work_items.create_approval(
            context.instance,
            context.step,
            {
                "title": self.evaluator.replace_tokens(config.approval_title, view) or context.step.name,
                "approver": approver,
                "template_id": config.approval_template_id,
                "due_date": due_date,
                "process_id": context.instance.process_id,
            },
        )
        return ActionResult.wait(
            WaitItemType.APPROVAL,
            {"approvalId": approval_id, "approverId": approver},
            approval_ids=[approval_id],
        )

    @staticmethod
    def _person(view: Dict[str, Any], explicit, field: Optional[str], email: Optional[str], role: Optional[str]):
        if explicit not in (None, ""):
            return explicit
        if field:
            value = resolve_path(field, view)
            if value not in (None, ""):
                return value
        if email:
            return email
        if role:
            id_field, email_field = ROLE_FIELDS.get(role.lower(), (None, None))
            for key in (id_field, email_field):
                if key and view.get(key) not in (None, ""):
                    return view[key]
        return None

    # ─── Notification ───

    async def send_notification(self, context: ActionContext) -> ActionResult:
        config: NotificationConfig = context.step.config
        view = context.evaluation_view()

        recipients: List[Any] = list(config.recipient_ids) + list(config.recipient_emails)
        if config.recipient_field:
            value = resolve_path(config.recipient_field, view)
            recipients.extend(value if isinstance(value, list) else [value])
        if config.recipient_role:
            recipients.append(self._person(view, None, None, None, config.recipient_role))
        recipients = [r for r in recipients if r not in (None, "")]
        if not recipients:
            return ActionResult.fail("No notification recipients specified")

        subject = self.evaluator.replace_tokens(config.notification_subject, view) or context.step.name
        message = (
            self.evaluator.replace_tokens(config.message_template, view)
            or f'Notification from workflow step "{context.step.name}"'
        )
        outcome = await self.notifier.send(
            config.notification_type or "step_notification",
            recipients,
            subject,
            message,
            {"instance_id": context.instance.id, "step_id": context.step.id},
        )
        if not outcome.delivered:
            return ActionResult.fail(f"Notification failed: {outcome.error}")
        return ActionResult.ok({"notificationSent": True, "notificationRecipients": outcome.recipients})

    # ─── Variables & timers ───

    def set_variable(self, context: ActionContext) -> ActionResult:
        config: SetVariableConfig = context.step.config
        if not config.variable_name:
            return ActionResult.fail("Variable name not specified")

        view = context.evaluation_view()
        if config.variable_expression:
            value = self.evaluator.evaluate_expression(config.variable_expression, view)
        elif isinstance(config.variable_value, str) and "{{" in config.variable_value:
            value = self.evaluator.replace_tokens(config.variable_value, view)
        else:
            value = config.variable_value
        return ActionResult.ok({config.variable_name: value})

    def wait(self, context: ActionContext) -> ActionResult:
        """Timer wait measured from when the step started."""
        config: WaitConfig = context.step.config
        now = self._now()
        wait_until = None

        if config.wait_hours:
            started = context.step_state.started_date if context.step_state and context.step_state.started_date else now
            wait_until = started + timedelta(hours=config.wait_hours)
        elif config.wait_until_field:
            wait_until = to_datetime(resolve_path(config.wait_until_field, context.evaluation_view()), now)

        if wait_until is None or wait_until <= now:
            return ActionResult.ok({"waitCompleted": True} if wait_until else {})

        return ActionResult.wait(WaitItemType.TIME, {"waitUntil": wait_until.isoformat(), "waitType": "time"})
