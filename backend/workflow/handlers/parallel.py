"""Parallel step: run every branch step concurrently and join on all of them."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List

import structlog

from core.constants import WaitItemType
from workflow.interfaces import InstanceRepository
from workflow.models import ParallelConfig, Step, WorkflowDefinition
from workflow.results import ActionContext, ActionResult

logger = structlog.get_logger(__name__)

BranchExecutor = Callable[[Step, ActionContext], Awaitable[ActionResult]]


def parallel_targets(step: Step) -> List[str]:
    """Branch step ids: the step's config first, else its parallel transition."""
    config = step.config
    if isinstance(config, ParallelConfig) and config.parallel_step_ids:
        return list(config.parallel_step_ids)
    if step.on_complete is not None:
        return list(step.on_complete.parallel_step_ids)
    return []


class ParallelHandler:
    """Fan-out/fan-in over a Parallel step's branches.

    Every branch runs with its own copy of the same variables snapshot and
    is marked Completed or Failed on its own. A branch that waits stays
    In Progress with its pending item ids recorded, and makes the whole
    step wait. Results are reported in step id order.
    """

    def __init__(self, instances: InstanceRepository, branch_executor: BranchExecutor):
        self.instances = instances
        self.branch_executor = branch_executor

    async def execute(self, context: ActionContext, definition: WorkflowDefinition) -> ActionResult:
        step = context.step
        targets = parallel_targets(step)
        if not targets:
            return ActionResult.ok()

        logger.info("Starting parallel execution", step_id=step.id, branches=targets)
        started = time.monotonic()
        snapshot = dict(context.variables)

        outcomes = await asyncio.gather(
            *(self._run_branch(context, definition, branch_id, snapshot) for branch_id in targets)
        )
        outcomes = sorted(outcomes, key=lambda o: o["stepId"])

        execution_ms = int((time.monotonic() - started) * 1000)
        succeeded = [o for o in outcomes if o["success"]]
        failed = [o for o in outcomes if not o["success"]]
        waiting = [o for o in outcomes if o["success"] and o["result"].is_wait]

        logger.info(
            "Parallel execution finished",
            step_id=step.id,
            succeeded=len(succeeded),
            failed=len(failed),
            waiting=len(waiting),
            execution_ms=execution_ms,
        )

        outputs: Dict[str, Any] = {
            "parallelSteps": targets,
            "executionMode": "parallel",
            "executionTimeMs": execution_ms,
            "results": [
                {"stepId": o["stepId"], "success": o["success"], "error": o["error"]} for o in outcomes
            ],
            "successCount": len(succeeded),
            "failedCount": len(failed),
            "aggregatedOutputs": {o["stepId"]: o["outputs"] for o in outcomes},
        }

        if waiting:
            outputs["waitingSteps"] = [o["stepId"] for o in waiting]
            task_ids: List[str] = []
            approval_ids: List[str] = []
            for o in waiting:
                task_ids.extend(o["result"].task_ids)
                approval_ids.extend(o["result"].approval_ids)
            return ActionResult.wait(WaitItemType.TASK, outputs, task_ids=task_ids, approval_ids=approval_ids)

        fail_on_any = step.config.fail_on_any_error is not False if isinstance(step.config, ParallelConfig) else True
        if (failed and fail_on_any) or not succeeded:
            details = "; ".join(f"{o['stepId']}: {o['error']}" for o in failed)
            return ActionResult.fail(f"Parallel execution failed: {details}", outputs)

        return ActionResult.ok(outputs)

    async def _run_branch(
        self,
        context: ActionContext,
        definition: WorkflowDefinition,
        branch_id: str,
        snapshot: Dict[str, Any],
    ) -> Dict[str, Any]:
        instance_id = context.instance.id
        branch = definition.get_step(branch_id)
        if branch is None:
            logger.warning("Parallel branch not found", step_id=branch_id)
            failure = ActionResult.fail(f"Step {branch_id} not found")
            return self._outcome(branch_id, failure)

        try:
            await self.instances.start_step(instance_id, branch_id)
            branch_context = context.scoped(branch, dict(snapshot))
            branch_context.step_state = await self.instances.get_step_state(instance_id, branch_id)
            result = await self.branch_executor(branch, branch_context)
        except Exception as e:
            logger.error("Parallel branch raised", step_id=branch_id, error=str(e))
            result = ActionResult.fail(str(e) or type(e).__name__)

        if not result.success:
            await self.instances.fail_step(instance_id, branch_id, result.error or "Unknown error")
        elif result.is_wait:
            await self.instances.update_step_state(
                instance_id,
                branch_id,
                {"task_assignment_ids": list(result.task_ids), "approval_ids": list(result.approval_ids)},
            )
        else:
            await self.instances.complete_step(
                instance_id, branch_id, {"success": True}, result.output_variables
            )
        return self._outcome(branch_id, result)

    @staticmethod
    def _outcome(branch_id: str, result: ActionResult) -> Dict[str, Any]:
        return {
            "stepId": branch_id,
            "success": result.success,
            "error": result.error,
            "outputs": dict(result.output_variables),
            "result": result,
        }
