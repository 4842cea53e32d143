"""Tests for the ForEach step handler."""

import pytest

from conftest import make_step
from workflow.handlers.foreach import ForEachHandler
from workflow.models import Step
from workflow.results import ActionContext, ActionResult
from workflow.state import WorkflowInstance

EQUIPMENT = ["laptop", "phone", "badge"]


class RecordingInner:
    """Inner step executor that records each call's variables."""

    def __init__(self, fail_items=()):
        self.calls = []
        self.fail_items = set(fail_items)

    async def __call__(self, step: Step, context: ActionContext) -> ActionResult:
        self.calls.append((step.id, dict(context.variables)))
        item = context.variables.get("item")
        if item in self.fail_items:
            return ActionResult.fail(f"cannot order {item}")
        return ActionResult.ok({f"{step.id}Result": f"{item}-{context.variables['index']}"})


def loop_context(variables=None, **config):
    base = {
        "collectionPath": "variables.equipment",
        "innerSteps": [make_step("order", "Action", 1), make_step("confirm", "Action", 2)],
    }
    base.update(config)
    step = Step.model_validate(make_step("each", "ForEach", 3, config=base))
    return ActionContext(
        instance=WorkflowInstance(definition_id="d", process_id="p", id="inst-1"),
        step=step,
        variables={"equipment": EQUIPMENT, **(variables or {})},
    )


@pytest.mark.unit
class TestForEachSequential:
    @pytest.mark.asyncio
    async def test_runs_inner_steps_per_item(self):
        inner = RecordingInner()
        result = await ForEachHandler(inner).execute(loop_context())

        assert result.success
        outputs = result.output_variables
        assert outputs["forEachCompleted"] is True
        assert outputs["iterations"] == 3
        assert outputs["successfulIterations"] == 3
        assert [step_id for step_id, _ in inner.calls] == ["order", "confirm"] * 3
        assert outputs["iterationResults"][1]["outputVariables"] == {"confirmResult": "phone-1"}

    @pytest.mark.asyncio
    async def test_loop_bindings(self):
        inner = RecordingInner()
        await ForEachHandler(inner).execute(loop_context())

        _, first = inner.calls[0]
        assert first["item"] == "laptop"
        assert first["index"] == 0
        assert first["item_total"] == 3
        assert first["item_isFirst"] is True
        assert first["item_isLast"] is False
        _, last = inner.calls[-1]
        assert last["item_isLast"] is True

    @pytest.mark.asyncio
    async def test_outputs_feed_the_next_inner_step(self):
        inner = RecordingInner()
        await ForEachHandler(inner).execute(loop_context())
        _, confirm_vars = inner.calls[1]
        assert confirm_vars["orderResult"] == "laptop-0"

    @pytest.mark.asyncio
    async def test_custom_variable_names(self):
        inner = RecordingInner()
        await ForEachHandler(inner).execute(loop_context(itemVariable="device", indexVariable="n"))
        _, first = inner.calls[0]
        assert first["device"] == "laptop"
        assert first["n"] == 0
        assert first["device_total"] == 3

    @pytest.mark.asyncio
    async def test_failures_recorded_by_default(self):
        inner = RecordingInner(fail_items={"phone"})
        result = await ForEachHandler(inner).execute(loop_context())

        assert result.success
        assert result.output_variables["failedIterations"] == 1
        assert result.output_variables["successfulIterations"] == 2

    @pytest.mark.asyncio
    async def test_fail_policy_stops_loop(self):
        inner = RecordingInner(fail_items={"phone"})
        result = await ForEachHandler(inner).execute(loop_context(onError={"action": "fail"}))

        assert not result.success
        assert result.error == "ForEach iteration 1 failed: cannot order phone"
        assert len(result.output_variables["iterationResults"]) == 2

    @pytest.mark.asyncio
    async def test_non_list_collection(self):
        result = await ForEachHandler(RecordingInner()).execute(loop_context({"equipment": "laptop"}))
        assert result.success
        assert result.output_variables["iterations"] == 0

    @pytest.mark.asyncio
    async def test_empty_collection(self):
        inner = RecordingInner()
        result = await ForEachHandler(inner).execute(loop_context({"equipment": []}))

        assert result.success
        assert not result.is_wait
        outputs = result.output_variables
        assert (outputs["iterations"], outputs["successfulIterations"], outputs["failedIterations"]) == (0, 0, 0)
        assert inner.calls == []

    @pytest.mark.asyncio
    async def test_missing_configuration(self):
        handler = ForEachHandler(RecordingInner())
        result = await handler.execute(loop_context(collectionPath=None))
        assert result.error == "ForEach step requires collectionPath configuration"
        result = await handler.execute(loop_context(innerSteps=[]))
        assert result.error == "ForEach step requires innerSteps configuration"

    @pytest.mark.asyncio
    async def test_start_and_end_inner_steps_are_ignored(self):
        inner = RecordingInner()
        await ForEachHandler(inner).execute(
            loop_context(innerSteps=[make_step("s", "Start", 1), make_step("order", "Action", 2), make_step("e", "End", 3)])
        )
        assert {step_id for step_id, _ in inner.calls} == {"order"}


@pytest.mark.unit
class TestForEachParallel:
    @pytest.mark.asyncio
    async def test_parallel_results_sorted_by_index(self):
        inner = RecordingInner()
        result = await ForEachHandler(inner).execute(loop_context(parallelForEach=True, maxParallel=2))

        assert result.success
        assert [r["index"] for r in result.output_variables["iterationResults"]] == [0, 1, 2]
        assert len(inner.calls) == 6

    @pytest.mark.asyncio
    async def test_parallel_abort_after_failed_batch(self):
        inner = RecordingInner(fail_items={"laptop"})
        result = await ForEachHandler(inner).execute(
            loop_context(parallelForEach=True, maxParallel=2, onError={"action": "fail"})
        )
        assert not result.success
        assert len(result.output_variables["iterationResults"]) == 2
