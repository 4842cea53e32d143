"""
ForEach step: run inner steps once per item of a collection.

Each iteration sees the parent's variables plus the loop bindings
(``item``, ``index``, ``item_total``, ``item_isFirst``, ``item_isLast``,
named after the configured item/index variables). Outputs of one inner
step feed the next inner step of the same iteration.

Sequential mode stops at the first failed iteration when the step's
``onError.action`` is ``fail``; otherwise failures are recorded and the
loop goes on. Parallel mode runs batches of ``maxParallel`` iterations
with ``asyncio.gather`` and re-sorts the results by index.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List

import structlog

from core.constants import ErrorAction, StepType
from workflow.conditions import MISSING, resolve_path
from workflow.models import ForEachConfig, Step
from workflow.results import ActionContext, ActionResult

logger = structlog.get_logger(__name__)

InnerStepExecutor = Callable[[Step, ActionContext], Awaitable[ActionResult]]


class ForEachHandler:

    def __init__(self, inner_executor: InnerStepExecutor, default_max_parallel: int = 5):
        self.inner_executor = inner_executor
        self.default_max_parallel = default_max_parallel

    async def execute(self, context: ActionContext) -> ActionResult:
        config: ForEachConfig = context.step.config

        if not config.collection_path:
            return ActionResult.fail("ForEach step requires collectionPath configuration")
        if not config.inner_steps:
            return ActionResult.fail("ForEach step requires innerSteps configuration")

        collection = resolve_path(config.collection_path, context.evaluation_view(), MISSING)
        if not isinstance(collection, list):
            logger.warning(
                "ForEach collection is not a list",
                step_id=context.step.id,
                collection_path=config.collection_path,
            )
            return ActionResult.ok(self._summary(0, []))

        abort_on_error = config.on_error is not None and config.on_error.action == ErrorAction.FAIL
        logger.info("Starting ForEach loop", step_id=context.step.id, items=len(collection))

        if config.parallel_for_each and len(collection) > 1:
            max_parallel = config.max_parallel or self.default_max_parallel
            results = await self._run_parallel(collection, config, context, max_parallel, abort_on_error)
        else:
            results = await self._run_sequential(collection, config, context, abort_on_error)

        outputs = self._summary(len(collection), results)
        logger.info(
            "ForEach loop finished",
            step_id=context.step.id,
            successful=outputs["successfulIterations"],
            failed=outputs["failedIterations"],
        )

        if outputs["failedIterations"] and abort_on_error:
            first = next(r for r in results if not r["success"])
            return ActionResult.fail(f"ForEach iteration {first['index']} failed: {first.get('error')}", outputs)
        return ActionResult.ok(outputs)

    async def _run_sequential(
        self,
        collection: List[Any],
        config: ForEachConfig,
        context: ActionContext,
        abort_on_error: bool,
    ) -> List[Dict[str, Any]]:
        results = []
        for index, item in enumerate(collection):
            outcome = await self._run_iteration(item, index, len(collection), config, context)
            results.append(outcome)
            if not outcome["success"] and abort_on_error:
                logger.warning("Stopping ForEach loop on failed iteration", index=index)
                break
        return results

    async def _run_parallel(
        self,
        collection: List[Any],
        config: ForEachConfig,
        context: ActionContext,
        max_parallel: int,
        abort_on_error: bool,
    ) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        total = len(collection)
        for start in range(0, total, max_parallel):
            batch = collection[start:start + max_parallel]
            batch_results = await asyncio.gather(
                *(
                    self._run_iteration(item, start + offset, total, config, context)
                    for offset, item in enumerate(batch)
                )
            )
            results.extend(batch_results)
            if abort_on_error and any(not r["success"] for r in batch_results):
                break
        return sorted(results, key=lambda r: r["index"])

    async def _run_iteration(
        self,
        item: Any,
        index: int,
        total: int,
        config: ForEachConfig,
        parent: ActionContext,
    ) -> Dict[str, Any]:
        item_var = config.item_variable or "item"
        variables = {
            **parent.variables,
            item_var: item,
            (config.index_variable or "index"): index,
            f"{item_var}_total": total,
            f"{item_var}_isFirst": index == 0,
            f"{item_var}_isLast": index == total - 1,
        }

        last_outputs: Dict[str, Any] = {}
        for inner in config.inner_steps:
            if inner.type in (StepType.START, StepType.END):
                continue
            try:
                result = await self.inner_executor(inner, parent.scoped(inner, variables))
            except Exception as e:
                logger.error("ForEach iteration raised", index=index, step_id=inner.id, error=str(e))
                return {"index": index, "success": False, "error": str(e) or type(e).__name__}

            if not result.success:
                return {
                    "index": index,
                    "success": False,
                    "error": result.error,
                    "outputVariables": result.output_variables,
                }
            if result.is_wait:
                logger.warning("Wait inside a ForEach loop is not supported; continuing", step_id=inner.id)

            variables.update(result.output_variables)
            last_outputs = result.output_variables

        return {"index": index, "success": True, "outputVariables": last_outputs}

    @staticmethod
    def _summary(total: int, results: List[Dict[str, Any]]) -> Dict[str, Any]:
        successful = sum(1 for r in results if r["success"])
        return {
            "forEachCompleted": True,
            "iterations": total,
            "successfulIterations": successful,
            "failedIterations": len(results) - successful,
            "iterationResults": results,
        }
