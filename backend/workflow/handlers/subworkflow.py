"""CallWorkflow step: run another definition as a child instance."""

from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from core.constants import InstanceStatus
from workflow.conditions import resolve_path
from workflow.interfaces import DefinitionRepository, InstanceRepository
from workflow.models import CallWorkflowConfig, Step, WorkflowDefinition
from workflow.results import ActionContext, ActionResult, ExecutionResult
from workflow.state import WorkflowInstance

logger = structlog.get_logger(__name__)

SpawnInstance = Callable[..., Awaitable[WorkflowInstance]]
ExecuteStep = Callable[[str, str], Awaitable[ExecutionResult]]


def map_input_variables(
    mappings: Dict[str, str],
    variables: Dict[str, Any],
    process: Dict[str, Any],
) -> Dict[str, Any]:
    """Child variables from ``{child_name: parent_path}``.

    ``variables.x`` and ``process.x`` address one side explicitly; an
    unprefixed path is looked up in variables first, then process fields.
    """
    child: Dict[str, Any] = {}
    for child_key, parent_path in mappings.items():
        head, _, rest = parent_path.partition(".")
        if head in ("variables", "process") and rest:
            source = variables if head == "variables" else process
            child[child_key] = resolve_path(rest, source)
        elif head in variables:
            child[child_key] = resolve_path(parent_path, variables)
        else:
            child[child_key] = resolve_path(parent_path, process)
    return child


def map_output_variables(mappings: Dict[str, str], child_variables: Dict[str, Any]) -> Dict[str, Any]:
    """Parent outputs from ``{parent_name: child_path}``."""
    return {key: resolve_path(path, child_variables) for key, path in mappings.items()}


class SubWorkflowHandler:
    """Starts a child instance and, unless told not to wait, drives it to the end.

    The child is driven through the same ``execute_step`` primitive the
    engine exposes, bounded by ``max_iterations``. A child that stops to
    wait cannot finish synchronously and fails the step.
    """

    def __init__(
        self,
        definitions: DefinitionRepository,
        instances: InstanceRepository,
        spawn: SpawnInstance,
        execute_step: ExecuteStep,
        max_iterations: int = 100,
    ):
        self.definitions = definitions
        self.instances = instances
        self.spawn = spawn
        self.execute_step = execute_step
        self.max_iterations = max_iterations

    async def execute(self, context: ActionContext) -> ActionResult:
        config: CallWorkflowConfig = context.step.config
        if not config.sub_workflow_code and not config.sub_workflow_id:
            return ActionResult.fail("CallWorkflow step requires subWorkflowCode or subWorkflowId")

        try:
            return await self._call(context, config)
        except Exception as e:
            logger.error("Sub-workflow execution raised", step_id=context.step.id, error=str(e))
            return ActionResult.fail(f"Failed to execute sub-workflow: {e}")

    async def _call(self, context: ActionContext, config: CallWorkflowConfig) -> ActionResult:
        definition = await self._find_definition(config)
        if definition is None:
            return ActionResult.fail(f"Sub-workflow not found: {config.sub_workflow_code or config.sub_workflow_id}")
        if not definition.is_active:
            return ActionResult.fail(f'Sub-workflow "{definition.title}" is not active')

        parent = context.instance
        child = await self.spawn(
            definition,
            process_id=parent.process_id,
            context={
                **parent.context,
                "parentWorkflowInstanceId": parent.id,
                "parentStepId": context.step.id,
            },
            variables=map_input_variables(config.input_mappings, context.variables, context.process),
            title=f"{definition.title} (Sub-workflow of {parent.id})",
        )
        logger.info("Sub-workflow instance created", parent_instance_id=parent.id, child_instance_id=child.id)

        if not config.wait_for_sub_workflow:
            return ActionResult.ok(
                {"subWorkflowId": child.id, "subWorkflowStatus": InstanceStatus.RUNNING.value}
            )

        status = await self._drive(child, definition)
        final = await self.instances.get_by_id(child.id)

        if status == InstanceStatus.COMPLETED:
            return ActionResult.ok(
                {
                    "subWorkflowId": child.id,
                    "subWorkflowStatus": InstanceStatus.COMPLETED.value,
                    **map_output_variables(config.output_mappings, final.variables),
                }
            )

        outputs = {"subWorkflowId": child.id, "subWorkflowStatus": status.value}
        if status.is_waiting:
            return ActionResult.fail(
                f"Sub-workflow entered waiting state ({status.value}) and cannot complete synchronously",
                outputs,
            )
        return ActionResult.fail(f"Sub-workflow failed: {final.error_message or 'Unknown error'}", outputs)

    async def _find_definition(self, config: CallWorkflowConfig) -> Optional[WorkflowDefinition]:
        if config.sub_workflow_id:
            return await self.definitions.get_by_id(config.sub_workflow_id)
        return await self.definitions.get_by_code(config.sub_workflow_code)

    async def _drive(self, child: WorkflowInstance, definition: WorkflowDefinition) -> InstanceStatus:
        start = definition.start_step or (definition.sorted_steps()[0] if definition.steps else None)
        if start is None:
            return InstanceStatus.FAILED

        step_id = start.id
        for _ in range(self.max_iterations):
            result = await self.execute_step(child.id, step_id)
            if result.status.is_terminal or result.status.is_waiting:
                return result.status

            current = await self.instances.get_by_id(child.id)
            if not current.current_step_id or current.current_step_id == step_id:
                break
            step_id = current.current_step_id

        logger.warning("Sub-workflow did not finish within the iteration limit", child_instance_id=child.id)
        return InstanceStatus.FAILED

    async def on_sub_workflow_completed(self, child: WorkflowInstance, parent_step: Step) -> ActionResult:
        """Outputs for a parent step whose child finished on its own."""
        if child.status != InstanceStatus.COMPLETED:
            return ActionResult.fail(f"Sub-workflow did not complete successfully: {child.status.value}")

        mappings = parent_step.config.output_mappings if isinstance(parent_step.config, CallWorkflowConfig) else {}
        return ActionResult.ok(
            {
                "subWorkflowId": child.id,
                "subWorkflowStatus": InstanceStatus.COMPLETED.value,
                **map_output_variables(mappings, child.variables),
            }
        )
