"""Workflow notification manager.

Routes workflow lifecycle events (started, completed, failed, SLA breach,
step error) to a delivery sender. Lifecycle notifications are best-effort:
delivery failures are logged and returned as a ``NotificationOutcome``,
never raised into the workflow.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog

from workflow.interfaces import NotificationSender
from workflow.results import NotificationOutcome
from workflow.state import WorkflowInstance

logger = structlog.get_logger(__name__)


class LoggingSender:
    """Sender used when no delivery channel is configured: logs and drops."""

    async def send(
        self,
        event: str,
        recipients: List[str],
        subject: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info("Notification (no channel configured)", notification_event=event, recipients=recipients, subject=subject)


def stakeholders(context: Dict[str, Any], include_employee: bool = True) -> List[str]:
    """Manager and employee addresses from an instance context, de-duplicated."""
    candidates = [context.get("managerId"), context.get("managerEmail")]
    if include_employee:
        candidates.append(context.get("employeeEmail"))
    return _unique(candidates)


def _unique(values: Iterable[Any]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value in (None, ""):
            continue
        text = str(value)
        if text not in seen:
            seen.append(text)
    return seen


class NotificationManager:
    """Central notification dispatcher for the workflow core."""

    def __init__(self, sender: Optional[NotificationSender] = None):
        self._sender = sender or LoggingSender()

    async def send(
        self,
        event: str,
        recipients: Iterable[Any],
        subject: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationOutcome:
        """Send one notification; failures are captured, not raised."""
        targets = _unique(recipients)
        if not targets:
            return NotificationOutcome.skipped(event, "No recipients")

        try:
            await self._sender.send(event, targets, subject, message, data or {})
        except Exception as e:
            logger.warning("Notification delivery failed", notification_event=event, recipients=targets, error=str(e))
            return NotificationOutcome(event=event, delivered=False, recipients=targets, error=str(e))

        logger.info("Notification sent", notification_event=event, recipients=targets)
        return NotificationOutcome(event=event, delivered=True, recipients=targets)

    # ─── Lifecycle events ───

    async def workflow_started(self, instance: WorkflowInstance) -> NotificationOutcome:
        return await self.send(
            "workflow_started",
            stakeholders(instance.context),
            f"Workflow started: {instance.title}",
            f"{instance.title} has started for {instance.context.get('employeeName') or 'the employee'}.",
            {"instance_id": instance.id, "process_id": instance.process_id},
        )

    async def workflow_completed(self, instance: WorkflowInstance) -> NotificationOutcome:
        return await self.send(
            "workflow_completed",
            stakeholders(instance.context),
            f"Workflow completed: {instance.title}",
            f"{instance.title} has completed.",
            {"instance_id": instance.id, "process_id": instance.process_id},
        )

    async def workflow_failed(self, instance: WorkflowInstance, error: str) -> NotificationOutcome:
        return await self.send(
            "workflow_failed",
            stakeholders(instance.context, include_employee=False),
            f"Workflow failed: {instance.title}",
            f"{instance.title} failed: {error}",
            {"instance_id": instance.id, "process_id": instance.process_id, "error": error},
        )

    async def sla_breached(
        self,
        instance: WorkflowInstance,
        step_name: str,
        elapsed_hours: int,
        extra_recipients: Iterable[Any] = (),
    ) -> NotificationOutcome:
        recipients = stakeholders(instance.context, include_employee=False) + list(extra_recipients)
        return await self.send(
            "sla_breach",
            recipients,
            f"SLA breached: {step_name}",
            f'Step "{step_name}" of {instance.title} has been waiting {elapsed_hours} hours.',
            {"instance_id": instance.id, "step_name": step_name, "elapsed_hours": elapsed_hours},
        )

    async def step_error(
        self,
        instance: WorkflowInstance,
        step_name: str,
        recipients: Iterable[Any],
        error: str,
    ) -> NotificationOutcome:
        return await self.send(
            "step_error",
            recipients,
            f"Workflow step failed: {step_name}",
            f'Step "{step_name}" of {instance.title} failed: {error}',
            {"instance_id": instance.id, "step_name": step_name, "error": error},
        )
