"""
Workflow resume service.

Brings waiting instances back to life. Two paths feed it:

1. Events: the host calls ``on_task_completed`` / ``on_approval_completed``
   when a work item is done. The item's step is completed and the
   instance continues from there.
2. Polling: ``poll_and_resume`` is the safety net for missed events. It
   walks waiting instances and re-runs whatever can make progress on its
   own: WaitForTasks re-checks, due Wait steps, due step retries, and
   Parallel steps whose branches all finished.

Duplicate deliveries are harmless: step completion is a compare-and-swap
in the engine, and a step that is already done is reported as such.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from core.constants import (
    WAITING_STATUSES,
    InstanceStatus,
    LogEvent,
    StepStatus,
    StepType,
    WaitCondition,
)
from core.exceptions import NotFoundError
from workflow.conditions import to_datetime
from workflow.handlers.parallel import parallel_targets
from workflow.interfaces import DefinitionRepository, InstanceRepository
from workflow.models import Step, WorkflowDefinition
from workflow.results import ExecutionResult
from workflow.state import StepState, WorkflowInstance, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class PollResult:
    """Outcome of one polling pass."""

    polled_at: datetime
    waiting_found: int = 0
    resumed: int = 0
    still_waiting: int = 0
    failed: int = 0
    skipped: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "polledAt": self.polled_at.isoformat(),
            "waitingFound": self.waiting_found,
            "resumed": self.resumed,
            "stillWaiting": self.still_waiting,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class ResumeService:
    """Event-driven and polling resume of waiting workflow instances."""

    def __init__(
        self,
        engine,
        instances: InstanceRepository,
        definitions: DefinitionRepository,
        batch_size: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.instances = instances
        self.definitions = definitions
        self.batch_size = batch_size
        self._now = clock or utcnow
        self._poll_lock = asyncio.Lock()

    # ─── Event-driven resume ──────────────────────────────────

    async def on_task_completed(
        self,
        instance_id: str,
        step_id: str,
        task_id: str,
        completion_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[ExecutionResult]:
        """Record a finished task and continue the workflow once its step is satisfied.

        Returns None while the step still waits on other tasks (wait
        condition ``all``) or when the instance has already finished.
        """
        instance, definition, step, state = await self._load(instance_id, step_id)
        if instance.status.is_terminal:
            logger.info("Task completed for finished workflow", instance_id=instance_id, task_id=task_id)
            return None
        if state is not None and state.status.is_done:
            return await self._complete_item(instance, definition, step, {"completedTaskId": task_id})

        completed_ids = list(state.result.get("completedTaskIds", [])) if state else []
        if task_id not in completed_ids:
            completed_ids.append(task_id)
        if state is not None:
            await self.instances.update_step_state(
                instance_id, step_id, {"result": {**state.result, "completedTaskIds": completed_ids}}
            )

        if state is not None and not self._tasks_satisfied(state, completed_ids):
            logger.info(
                "Step still waiting on tasks",
                instance_id=instance_id,
                step_id=step_id,
                completed=len(completed_ids),
                expected=len(state.task_assignment_ids),
            )
            return None

        result = {
            "taskCompleted": True,
            "completedTaskId": task_id,
            "completedTaskIds": completed_ids,
            "completedAt": self._now().isoformat(),
            **(completion_data or {}),
        }
        return await self._complete_item(instance, definition, step, result)

    async def on_approval_completed(
        self,
        instance_id: str,
        step_id: str,
        approval_id: str,
        approved: bool,
        comments: Optional[str] = None,
        approver_user_id: Optional[str] = None,
    ) -> Optional[ExecutionResult]:
        """Complete an Approval step with the decision; ``isRejected`` is exposed for branching."""
        instance, definition, step, _ = await self._load(instance_id, step_id)
        if instance.status.is_terminal:
            logger.info("Approval completed for finished workflow", instance_id=instance_id, approval_id=approval_id)
            return None

        logger.info(
            "Approval decision received",
            instance_id=instance_id,
            step_id=step_id,
            approval_id=approval_id,
            approved=approved,
        )
        result = {
            "approvalCompleted": True,
            "approvalId": approval_id,
            "approved": approved,
            "approverComments": comments,
            "approverUserId": approver_user_id,
            "respondedAt": self._now().isoformat(),
            "isRejected": not approved,
        }
        return await self._complete_item(instance, definition, step, result)

    async def _load(self, instance_id: str, step_id: str):
        instance = await self.instances.get_by_id(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        definition = await self.definitions.get_by_id(instance.definition_id)
        if definition is None:
            raise NotFoundError(f"Workflow definition {instance.definition_id} not found")
        step = definition.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in workflow")
        return instance, definition, step, await self.instances.get_step_state(instance_id, step_id)

    @staticmethod
    def _tasks_satisfied(state: StepState, completed_ids: List[str]) -> bool:
        expected = state.task_assignment_ids
        if not expected:
            return True
        if state.result.get("waitCondition") == WaitCondition.ANY.value:
            return any(task_id in completed_ids for task_id in expected)
        return all(task_id in completed_ids for task_id in expected)

    async def _complete_item(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        result: Dict[str, Any],
    ) -> Optional[ExecutionResult]:
        if instance.current_step_id == step.id:
            return await self.engine.complete_waiting_step(instance.id, step.id, result)

        # Not the current step: a Parallel branch or a step a WaitForTasks is watching
        swapped = await self.instances.transition_step_status(
            instance.id, step.id, (StepStatus.PENDING, StepStatus.IN_PROGRESS), StepStatus.COMPLETED
        )
        if not swapped:
            logger.info("Work item step already completed", instance_id=instance.id, step_id=step.id)
            return None
        await self.instances.complete_step(instance.id, step.id, result)
        await self.instances.add_log(
            instance.id,
            LogEvent.STEP_COMPLETED.value,
            f'Step "{step.name}" completed',
            step_id=step.id,
            step_name=step.name,
            data=result,
        )

        current = definition.get_step(instance.current_step_id) if instance.current_step_id else None
        if current is None or not instance.status.is_waiting:
            return None
        if current.type == StepType.PARALLEL and step.id in parallel_targets(current):
            return await self._complete_parallel_if_done(instance, current)
        if current.type == StepType.WAIT_FOR_TASKS:
            return await self.engine.execute_step(instance.id, current.id)
        return None

    async def _complete_parallel_if_done(self, instance: WorkflowInstance, step: Step) -> Optional[ExecutionResult]:
        branches = parallel_targets(step)
        states = {s.step_id: s for s in await self.instances.get_step_states(instance.id)}
        pending = [b for b in branches if b not in states or not states[b].status.is_done]
        if pending:
            logger.debug("Parallel step still waiting on branches", step_id=step.id, pending=pending)
            return None
        return await self.engine.complete_waiting_step(
            instance.id,
            step.id,
            {"parallelCompleted": True, "completedBranches": branches},
        )

    # ─── Polling ──────────────────────────────────────────────

    async def poll_and_resume(self) -> PollResult:
        """One polling pass over waiting instances; overlapping passes are skipped."""
        result = PollResult(polled_at=self._now())
        if self._poll_lock.locked():
            logger.warning("Polling already in progress - skipping")
            result.skipped = True
            return result

        async with self._poll_lock:
            waiting = await self.instances.list_by_status(WAITING_STATUSES, limit=self.batch_size)
            result.waiting_found = len(waiting)

            for instance in waiting:
                try:
                    outcome = await self._poll_instance(instance)
                except Exception as e:
                    logger.exception("Error resuming workflow during poll", instance_id=instance.id)
                    result.failed += 1
                    result.errors.append(f"Instance {instance.id}: {e}")
                    continue

                if outcome is None or outcome.status in WAITING_STATUSES:
                    result.still_waiting += 1
                elif outcome.success:
                    result.resumed += 1
                else:
                    result.failed += 1
                    if outcome.error:
                        result.errors.append(f"Instance {instance.id}: {outcome.error}")

        logger.info(
            "Poll finished",
            waiting_found=result.waiting_found,
            resumed=result.resumed,
            still_waiting=result.still_waiting,
            failed=result.failed,
        )
        return result

    async def _poll_instance(self, instance: WorkflowInstance) -> Optional[ExecutionResult]:
        if not instance.current_step_id:
            return None
        definition = await self.definitions.get_by_id(instance.definition_id)
        if definition is None:
            raise NotFoundError(f"Workflow definition {instance.definition_id} not found")
        step = definition.get_step(instance.current_step_id)
        if step is None:
            raise NotFoundError(f"Step {instance.current_step_id} not found in workflow")
        state = await self.instances.get_step_state(instance.id, step.id)
        now = self._now()

        if state is not None and state.next_retry_at is not None:
            if now < state.next_retry_at:
                return None
            logger.info("Retry due, re-running step", instance_id=instance.id, step_id=step.id)
            return await self.engine.execute_step(instance.id, step.id)

        if step.type == StepType.WAIT_FOR_TASKS:
            return await self.engine.execute_step(instance.id, step.id)

        if step.type == StepType.WAIT and state is not None:
            wait_until = to_datetime(state.result.get("waitUntil"), now)
            if wait_until is not None and wait_until > now:
                return None
            return await self.engine.execute_step(instance.id, step.id)

        if step.type == StepType.PARALLEL:
            return await self._complete_parallel_if_done(instance, step)

        return None

    # ─── Diagnostics ──────────────────────────────────────────

    async def get_waiting_counts(self) -> Dict[str, int]:
        counts = {
            "waitingForTask": len(await self.instances.list_by_status([InstanceStatus.WAITING_FOR_TASK])),
            "waitingForApproval": len(await self.instances.list_by_status([InstanceStatus.WAITING_FOR_APPROVAL])),
            "waitingForInput": len(await self.instances.list_by_status([InstanceStatus.WAITING_FOR_INPUT])),
        }
        counts["total"] = sum(counts.values())
        return counts

    async def get_wait_status(self, instance_id: str) -> Dict[str, Any]:
        """What an instance is waiting for and whether it could resume now."""
        instance = await self.instances.get_by_id(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        state = (
            await self.instances.get_step_state(instance_id, instance.current_step_id)
            if instance.current_step_id
            else None
        )

        waiting_for = "none"
        pending_items: List[Dict[str, str]] = []
        can_resume = instance.status == InstanceStatus.RUNNING
        blocked_reason = None

        if state is not None and state.next_retry_at is not None:
            waiting_for = "retry"
            can_resume = self._now() >= state.next_retry_at
            if not can_resume:
                blocked_reason = f"Retry scheduled at {state.next_retry_at.isoformat()}"
        elif instance.status == InstanceStatus.WAITING_FOR_TASK:
            waiting_for = "tasks"
            completed = set(state.result.get("completedTaskIds", [])) if state else set()
            task_ids = state.task_assignment_ids if state else []
            pending_items = [
                {"type": "task", "id": t, "status": "Completed" if t in completed else "Pending"} for t in task_ids
            ]
            outstanding = [t for t in task_ids if t not in completed]
            can_resume = not outstanding
            if outstanding:
                blocked_reason = f"Waiting for {len(outstanding)} task(s) to complete"
        elif instance.status == InstanceStatus.WAITING_FOR_APPROVAL:
            waiting_for = "approvals"
            pending_items = [
                {"type": "approval", "id": a, "status": "Pending"} for a in (state.approval_ids if state else [])
            ]
            blocked_reason = "Waiting for approval decision"
        elif instance.status == InstanceStatus.WAITING_FOR_INPUT:
            waiting_for = "input"
            wait_until = to_datetime(state.result.get("waitUntil")) if state else None
            if wait_until is not None:
                waiting_for = "time"
                can_resume = self._now() >= wait_until
                if not can_resume:
                    blocked_reason = f"Waiting until {wait_until.isoformat()}"
            else:
                blocked_reason = "Waiting for user input"

        return {
            "instance": instance.to_dict(),
            "stepState": state.to_dict() if state else None,
            "waitingFor": waiting_for,
            "pendingItems": pending_items,
            "canResume": can_resume,
            "blockedReason": blocked_reason,
        }
