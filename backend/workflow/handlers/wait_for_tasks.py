"""WaitForTasks step: wait until referenced steps' work items are done.

Completion is re-checked every time the step executes (initial run, resume,
poll). The timeout is the wall-clock time since the step state's
``started_date``; when it has elapsed the configured ``onTimeout`` applies:

    skip      step marked Skipped, workflow continues
    fail      step fails
    escalate  SLA-breach notification, escalation counted in retry_count,
              keep waiting (default)
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from core.constants import StepStatus, TimeoutAction, WaitCondition, WaitItemType
from notifications.manager import NotificationManager
from workflow.interfaces import InstanceRepository
from workflow.models import WaitForTasksConfig
from workflow.results import ActionContext, ActionResult
from workflow.state import utcnow

logger = structlog.get_logger(__name__)

HOUR_MS = 3_600_000


class WaitForTasksHandler:

    def __init__(
        self,
        instances: InstanceRepository,
        notifier: Optional[NotificationManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.instances = instances
        self.notifier = notifier
        self._now = clock or utcnow

    async def execute(self, context: ActionContext) -> ActionResult:
        config: WaitForTasksConfig = context.step.config
        step_ids = list(config.wait_for_task_ids)
        condition = config.wait_condition
        timeout_hours = config.effective_timeout_hours or 0

        started = context.step_state.started_date if context.step_state else None
        elapsed_ms = (self._now() - (started or self._now())).total_seconds() * 1000

        if timeout_hours > 0 and elapsed_ms >= timeout_hours * HOUR_MS:
            logger.warning(
                "WaitForTasks step timed out",
                step_id=context.step.id,
                timeout_hours=timeout_hours,
                on_timeout=config.on_timeout.value,
            )
            return await self._on_timeout(context, config, elapsed_ms)

        progress = await self._check_completion(context.instance.id, step_ids)
        outputs: Dict[str, Any] = {
            "waitingForSteps": step_ids,
            "waitCondition": condition.value,
            "completedTasks": progress["completed"],
            "pendingTasks": progress["pending"],
        }

        done = len(progress["completed"]) == len(step_ids)
        if condition == WaitCondition.ANY and progress["completed"]:
            done = True
        if done:
            outputs["taskResults"] = progress["results"]
            return ActionResult.ok(outputs)

        outputs.update(
            {
                "pendingTaskIds": progress["pending_item_ids"],
                "onTimeout": config.on_timeout.value,
            }
        )
        if timeout_hours > 0:
            outputs["timeoutHours"] = timeout_hours
            outputs["remainingTimeMs"] = int(timeout_hours * HOUR_MS - elapsed_ms)
        return ActionResult.wait(WaitItemType.TASK, outputs, task_ids=progress["pending_item_ids"])

    async def _check_completion(self, instance_id: str, step_ids: List[str]) -> Dict[str, Any]:
        completed: List[str] = []
        pending: List[str] = []
        pending_item_ids: List[str] = []
        results: List[Dict[str, str]] = []

        for step_id in step_ids:
            state = await self.instances.get_step_state(instance_id, step_id)
            if state is None:
                pending.append(step_id)
                results.append({"stepId": step_id, "status": "NotFound"})
                continue

            results.append({"stepId": step_id, "status": state.status.value})
            if state.status.is_done:
                completed.append(step_id)
            elif state.status != StepStatus.FAILED:
                pending.append(step_id)
                pending_item_ids.extend(state.task_assignment_ids)

        return {
            "completed": completed,
            "pending": pending,
            "pending_item_ids": pending_item_ids,
            "results": results,
        }

    async def _on_timeout(self, context: ActionContext, config: WaitForTasksConfig, elapsed_ms: float) -> ActionResult:
        step = context.step
        elapsed_hours = int(elapsed_ms // HOUR_MS)

        if config.on_timeout == TimeoutAction.SKIP:
            return ActionResult.ok(
                {"timeoutAction": "skipped", "elapsedMs": int(elapsed_ms)},
                skip_step=True,
            )

        if config.on_timeout == TimeoutAction.FAIL:
            return ActionResult.fail(
                f'WaitForTasks step "{step.name}" timed out after {elapsed_hours} hours',
                {"timeoutAction": "failed", "elapsedMs": int(elapsed_ms)},
            )

        if self.notifier is not None:
            await self.notifier.sla_breached(
                context.instance,
                step.name,
                elapsed_hours,
                list(config.escalate_to_user_ids) + list(config.escalate_to_emails),
            )

        escalations = (context.step_state.retry_count if context.step_state else 0) + 1
        await self.instances.update_step_state(
            context.instance.id,
            step.id,
            {
                "retry_count": escalations,
                "error_message": f"Escalated at {self._now().isoformat()} after {elapsed_hours} hours",
            },
        )
        return ActionResult.wait(
            WaitItemType.TASK,
            {"timeoutAction": "escalated", "escalationCount": escalations, "elapsedMs": int(elapsed_ms)},
        )
