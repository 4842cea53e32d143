"""Workflow Execution Engine: state machine for joiner/mover/leaver instances.

Drives an instance from its Start step to an End step:

- Sequential, goto and branch transitions
- Condition steps and per-step entry conditions
- Parallel fan-out/fan-in over branch steps
- ForEach loops (sequential or in bounded batches)
- Sub-workflows run as child instances
- Webhooks, tasks, approvals, notifications, variables, timers
- Per-step error policy (scheduled retry, skip, goto, fail)
- Waiting on external work items, resumed by ``complete_waiting_step``
- Process status sync with retry and dead-letter fallback

``execute_step`` is an explicit loop: each iteration runs one step and
either yields the next step id or a final ``ExecutionResult``. Nothing is
kept in memory between calls; every iteration reloads the instance from
the repository.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import structlog

from app.config import Settings, get_settings
from core.constants import (
    InstanceStatus,
    LogEvent,
    LogLevel,
    NextAction,
    RESUMABLE_STATUSES,
    StepStatus,
    StepType,
    WaitItemType,
)
from core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    StepExecutionError,
    TransitionError,
    ValidationError,
)
from core.logging_config import bind_instance_context
from notifications.manager import NotificationManager
from workflow.conditions import ConditionEvaluator
from workflow.dead_letter import DeadLetterItem, DLQStats
from workflow.dispatcher import ActionDispatcher
from workflow.handlers.error_policy import StepErrorPolicy
from workflow.handlers.foreach import ForEachHandler
from workflow.handlers.parallel import ParallelHandler, parallel_targets
from workflow.handlers.subworkflow import SubWorkflowHandler
from workflow.handlers.wait_for_tasks import WaitForTasksHandler
from workflow.handlers.webhook import WebhookHandler
from workflow.interfaces import DefinitionRepository, HttpTransport, InstanceRepository, WorkItemGateway
from workflow.models import ConditionStepConfig, Step, TaskConfig, WaitConfig, WorkflowDefinition
from workflow.results import ActionContext, ActionResult, ExecutionResult, evaluation_view
from workflow.retry_strategies import RetryStrategy
from workflow.state import StepState, WorkflowInstance, utcnow
from workflow.status_sync import ProcessStatusSync
from workflow.transitions import TransitionDecision, TransitionResolver
from workflow.validator import next_by_order

logger = structlog.get_logger(__name__)

StepOutcome = Union[str, ExecutionResult]

WAIT_STATUS = {
    WaitItemType.TASK: InstanceStatus.WAITING_FOR_TASK,
    WaitItemType.APPROVAL: InstanceStatus.WAITING_FOR_APPROVAL,
    WaitItemType.INPUT: InstanceStatus.WAITING_FOR_INPUT,
    WaitItemType.TIME: InstanceStatus.WAITING_FOR_INPUT,
}

# Steps that created work items and must not create them again when re-entered
WORK_ITEM_STEP_TYPES = frozenset(
    {StepType.CREATE_TASK, StepType.ASSIGN_TASKS, StepType.APPROVAL, StepType.PARALLEL}
)


# ─── Options & helpers ────────────────────────────────────────


@dataclass
class StartWorkflowOptions:
    """What a caller supplies to start a workflow for a process.

    The definition is picked by ``definition_id``, else ``workflow_code``,
    else the default definition of ``process_type``.
    """

    process_id: str
    process_type: str = ""
    definition_id: Optional[str] = None
    workflow_code: Optional[str] = None
    employee_name: Optional[str] = None
    employee_email: Optional[str] = None
    department: Optional[str] = None
    manager_id: Optional[str] = None
    manager_email: Optional[str] = None
    started_by_user_id: Optional[str] = None
    started_by_user_name: Optional[str] = None
    custom_context: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)

    def build_context(self, started_at: datetime) -> Dict[str, Any]:
        context = {
            "processId": self.process_id,
            "processType": self.process_type,
            "employeeName": self.employee_name,
            "employeeEmail": self.employee_email or "",
            "department": self.department,
            "managerId": self.manager_id,
            "managerEmail": self.manager_email,
            "startedBy": self.started_by_user_name,
            "startedAt": started_at.isoformat(),
        }
        context = {k: v for k, v in context.items() if v is not None}
        context.update(self.custom_context)
        return context


def estimate_duration_hours(steps: List[Step]) -> float:
    """Rough duration of a definition: approvals a day, tasks by due date, timers as configured."""
    total = 0.0
    for step in steps:
        if step.type == StepType.APPROVAL:
            total += 24
        elif step.type in (StepType.CREATE_TASK, StepType.ASSIGN_TASKS):
            due_days = step.config.due_days_from_now if isinstance(step.config, TaskConfig) else None
            total += due_days * 8 if due_days else 8
        elif step.type == StepType.WAIT:
            wait_hours = step.config.wait_hours if isinstance(step.config, WaitConfig) else None
            total += wait_hours or 24
        else:
            total += 0.5
    return total


def process_fields(instance: WorkflowInstance) -> Dict[str, Any]:
    """Process-side view of an instance: its context plus the process id."""
    return {"id": instance.process_id, **instance.context}


# ─── Engine ───────────────────────────────────────────────────


class WorkflowEngine:
    """Executes workflow instances.

    Every collaborator is passed in; anything left out gets a default
    built from ``settings``. Instances are mutated only through the
    instance repository, so several engines can share one store.

    Usage:
        engine = WorkflowEngine(definitions, instances, transport=HttpxTransport())
        result = await engine.start_workflow(StartWorkflowOptions(process_id="42", process_type="Joiner"))
        if result.next_action == NextAction.WAIT:
            ...
            await engine.complete_waiting_step(result.instance_id, result.current_step_id, {"approved": True})
    """

    def __init__(
        self,
        definitions: DefinitionRepository,
        instances: InstanceRepository,
        status_sync: Optional[ProcessStatusSync] = None,
        notifier: Optional[NotificationManager] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        transport: Optional[HttpTransport] = None,
        work_items: Optional[WorkItemGateway] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.definitions = definitions
        self.instances = instances
        self.settings = settings or get_settings()
        self._now = clock or utcnow

        self.evaluator = ConditionEvaluator(clock=self._now)
        self.resolver = TransitionResolver(
            self.evaluator,
            fail_on_unmatched_branch=self.settings.fail_on_unmatched_branch,
        )
        self.notifier = notifier or NotificationManager()
        self.status_sync = status_sync or ProcessStatusSync(
            strategy=RetryStrategy.exponential(
                max_retries=self.settings.SYNC_MAX_RETRIES,
                initial_delay_ms=self.settings.SYNC_INITIAL_DELAY_MS,
                max_delay_ms=self.settings.SYNC_MAX_DELAY_MS,
                backoff_multiplier=self.settings.SYNC_BACKOFF_MULTIPLIER,
            )
        )

        webhook = None
        if transport is not None:
            webhook = WebhookHandler(transport, self.evaluator, self.settings.WEBHOOK_DEFAULT_TIMEOUT_MS)
        self.dispatcher = dispatcher or ActionDispatcher(
            work_items=work_items,
            notifier=self.notifier,
            webhook=webhook,
            evaluator=self.evaluator,
            clock=self._now,
        )

        self.error_policy = StepErrorPolicy(self.notifier, self.settings.STEP_RETRY_MAX_DELAY_MINUTES, self._now)
        self.wait_for_tasks = WaitForTasksHandler(instances, self.notifier, self._now)
        self.parallel = ParallelHandler(instances, self._execute_nested)
        self.for_each = ForEachHandler(self._execute_nested, self.settings.FOREACH_DEFAULT_MAX_PARALLEL)
        self.sub_workflows = SubWorkflowHandler(
            definitions,
            instances,
            self._spawn_instance,
            self.execute_step,
            self.settings.SUBWORKFLOW_MAX_ITERATIONS,
        )

    # ─── Starting ─────────────────────────────────────────────

    async def start_workflow(self, options: StartWorkflowOptions) -> ExecutionResult:
        """Create an instance for a process and run it until it waits or ends.

        Raises:
            NotFoundError: No definition matches the options
            ConflictError: Definition inactive, or the process already has an active instance
        """
        definition = await self._find_definition(options)
        if definition is None:
            raise NotFoundError(f"No workflow definition found for {options.process_type or options.process_id}")
        if not definition.is_active:
            raise ConflictError(f'Workflow "{definition.title}" is not active')

        existing = await self.instances.get_active_for_process(options.process_id)
        if existing is not None:
            raise ConflictError(
                f"Process {options.process_id} already has an active workflow (Instance: {existing.id})"
            )

        now = self._now()
        title = f"{definition.title} - {options.employee_name}" if options.employee_name else definition.title
        instance = await self._create_instance(
            definition,
            process_id=options.process_id,
            context=options.build_context(now),
            variables=options.variables,
            title=title,
            started_by_user_id=options.started_by_user_id,
        )

        with bind_instance_context(instance.id, instance.process_id):
            logger.info("Workflow started", definition_id=definition.id, workflow_code=definition.workflow_code)
            await self.notifier.workflow_started(instance)
            await self._sync(instance, InstanceStatus.RUNNING)

        return await self.execute_step(instance.id, instance.current_step_id)

    async def _find_definition(self, options: StartWorkflowOptions) -> Optional[WorkflowDefinition]:
        if options.definition_id:
            return await self.definitions.get_by_id(options.definition_id)
        if options.workflow_code:
            return await self.definitions.get_by_code(options.workflow_code)
        return await self.definitions.get_default_for_type(options.process_type)

    async def _create_instance(
        self,
        definition: WorkflowDefinition,
        process_id: str,
        context: Dict[str, Any],
        variables: Dict[str, Any],
        title: str,
        started_by_user_id: Optional[str] = None,
    ) -> WorkflowInstance:
        start = definition.start_step
        if start is None:
            raise ValidationError("Workflow definition has no Start step")

        now = self._now()
        hours = definition.estimated_duration_hours or estimate_duration_hours(definition.steps)
        instance = await self.instances.create(
            WorkflowInstance(
                definition_id=definition.id,
                process_id=process_id,
                title=title,
                status=InstanceStatus.RUNNING,
                current_step_id=start.id,
                current_step_name=start.name,
                total_steps=len(definition.steps),
                context=dict(context),
                variables={**definition.variable_defaults(), **variables},
                started_date=now,
                estimated_completion_date=now + timedelta(hours=hours),
                started_by_user_id=started_by_user_id,
            )
        )

        for step in definition.sorted_steps():
            is_start = step.id == start.id
            await self.instances.create_step_state(
                StepState(
                    instance_id=instance.id,
                    step_id=step.id,
                    step_name=step.name,
                    step_type=step.type,
                    order=step.order,
                    status=StepStatus.IN_PROGRESS if is_start else StepStatus.PENDING,
                    started_date=now if is_start else None,
                )
            )

        await self.instances.add_log(
            instance.id,
            LogEvent.WORKFLOW_STARTED.value,
            f'Started workflow "{definition.title}"',
            step_id=start.id,
            step_name=start.name,
            data={"processId": process_id, "definitionId": definition.id},
            user_id=started_by_user_id,
        )
        await self.definitions.increment_usage_count(definition.id)
        return instance

    async def _spawn_instance(
        self,
        definition: WorkflowDefinition,
        process_id: str,
        context: Dict[str, Any],
        variables: Dict[str, Any],
        title: str,
    ) -> WorkflowInstance:
        """Child instance for a CallWorkflow step. Not executed here."""
        return await self._create_instance(definition, process_id, context, variables, title)

    # ─── Step execution ───────────────────────────────────────

    async def execute_step(self, instance_id: str, step_id: str) -> ExecutionResult:
        """Run ``step_id`` and everything after it until the instance waits, fails or completes.

        Step failures and unexpected exceptions become a Failed instance and
        an error result; only caller errors raise.

        Raises:
            NotFoundError: Unknown instance or definition
            InvalidStateError: The instance has already finished
        """
        instance = await self._require_instance(instance_id)
        if instance.status.is_terminal:
            raise InvalidStateError(f"Workflow instance {instance_id} is {instance.status.value}")
        definition = await self._require_definition(instance.definition_id)

        with bind_instance_context(instance.id, instance.process_id):
            current = step_id
            try:
                while True:
                    outcome = await self._run_step(instance_id, current, definition)
                    if isinstance(outcome, ExecutionResult):
                        return outcome
                    current = outcome
            except Exception as e:
                logger.exception("Error executing step", step_id=current)
                step = definition.get_step(current)
                return await self._fail_instance(
                    instance_id,
                    current,
                    str(e) or type(e).__name__,
                    step_name=step.name if step else None,
                )

    async def _run_step(self, instance_id: str, step_id: str, definition: WorkflowDefinition) -> StepOutcome:
        instance = await self._require_instance(instance_id)
        step = definition.get_step(step_id)
        if step is None:
            raise StepExecutionError(f"Step {step_id} not found in workflow definition", step_id)

        step_state = await self.instances.get_step_state(instance_id, step_id)
        if step_state is not None and step_state.next_retry_at is not None:
            if not self.error_policy.should_retry_now(step_state):
                if not instance.status.is_waiting:
                    await self._change_status(instance, InstanceStatus.WAITING_FOR_INPUT)
                return self._result(
                    instance,
                    step,
                    instance.status,
                    NextAction.WAIT,
                    message=f"Retry scheduled at {step_state.next_retry_at.isoformat()}",
                )
            await self.instances.update_step_state(instance_id, step_id, {"next_retry_at": None})
            step_state.next_retry_at = None

        if (
            step_state is not None
            and step_state.status == StepStatus.IN_PROGRESS
            and step.type in WORK_ITEM_STEP_TYPES
            and step_state.pending_item_ids
        ):
            item_type = WaitItemType.APPROVAL if step.type == StepType.APPROVAL else WaitItemType.TASK
            logger.info("Step already waiting on its work items", step_id=step.id)
            return await self._enter_wait(
                instance,
                step,
                ActionResult.wait(
                    item_type,
                    task_ids=step_state.task_assignment_ids,
                    approval_ids=step_state.approval_ids,
                ),
            )

        completed = await self._completed_step_count(instance_id)
        await self.instances.update_progress(instance_id, step.id, step.name, completed, len(definition.steps))
        await self._log(instance_id, LogEvent.STEP_STARTED, f'Starting step "{step.name}" (Type: {_type_name(step)})', step)
        await self.instances.start_step(instance_id, step.id)

        context = ActionContext(
            instance=instance,
            step=step,
            step_state=await self.instances.get_step_state(instance_id, step.id),
            process=process_fields(instance),
            variables=dict(instance.variables),
        )

        if step.conditions and not self.evaluator.evaluate_conditions(step.conditions, context.evaluation_view()):
            await self.instances.skip_step(instance_id, step.id, "Entry conditions not met")
            await self._log(instance_id, LogEvent.STEP_SKIPPED, "Entry conditions not met - step skipped", step)
            return await self._advance(instance_id, step, definition, context.evaluation_view({"skipped": True}))

        if step.type == StepType.END:
            await self.instances.complete_step(instance_id, step.id, {"completed": True})
            await self._log(instance_id, LogEvent.STEP_COMPLETED, f'Step "{step.name}" completed', step)
            return await self._complete_workflow(instance_id)

        condition_target = None
        if step.type == StepType.CONDITION:
            result, condition_target = self._evaluate_condition_step(context)
        else:
            result = await self._execute_action(context, definition)

        if not result.success and step.error_policy is not None:
            result = await self.error_policy.handle_failure(context, result)

        if result.is_retry_scheduled:
            return await self._schedule_retry(instance, step, result)

        if not result.success:
            if result.output_variables:
                await self.instances.update_step_state(
                    instance_id, step.id, {"output_variables": dict(result.output_variables)}
                )
            return await self._fail_step(instance, step, result.error or "Unknown error", result.output_variables)

        if result.output_variables:
            await self.instances.update_variables(instance_id, result.output_variables)

        if result.is_wait:
            return await self._enter_wait(instance, step, result)

        if instance.status != InstanceStatus.RUNNING:
            await self._change_status(instance, InstanceStatus.RUNNING)

        view = evaluation_view(context.process, {**context.variables, **result.output_variables})

        if result.skip_step:
            reason = result.output_variables.get("skipReason") or result.output_variables.get("timeoutAction")
            await self.instances.skip_step(instance_id, step.id, reason)
            await self._log(instance_id, LogEvent.STEP_SKIPPED, f'Step "{step.name}" skipped', step, data=result.output_variables)
            return await self._advance(instance_id, step, definition, view)

        await self.instances.complete_step(instance_id, step.id, {"success": True}, result.output_variables)
        await self._log(instance_id, LogEvent.STEP_COMPLETED, f'Step "{step.name}" completed', step)

        target = result.redirect_to_step_id or condition_target
        if target:
            if definition.get_step(target) is None:
                raise TransitionError(f'Step "{step.name}" transitions to unknown step: {target}')
            return target
        return await self._advance(instance_id, step, definition, view)

    async def _execute_action(self, context: ActionContext, definition: WorkflowDefinition) -> ActionResult:
        step_type = context.step.type
        if step_type == StepType.START:
            return ActionResult.ok()
        if step_type == StepType.PARALLEL:
            return await self.parallel.execute(context, definition)
        return await self._execute_nested(context.step, context)

    async def _execute_nested(self, step: Step, context: ActionContext) -> ActionResult:
        """Action of a step run inside a Parallel branch or a ForEach iteration (or at top level)."""
        step_type = step.type
        if step_type in (StepType.START, StepType.END, StepType.CONDITION):
            return ActionResult.ok()
        if step_type == StepType.WAIT_FOR_TASKS:
            return await self.wait_for_tasks.execute(context)
        if step_type == StepType.FOR_EACH:
            return await self.for_each.execute(context)
        if step_type == StepType.CALL_WORKFLOW:
            return await self.sub_workflows.execute(context)
        if step_type == StepType.PARALLEL:
            return ActionResult.fail("Nested Parallel steps are not supported")
        if self.dispatcher.handles(step_type):
            return await self.dispatcher.dispatch(context)
        return ActionResult.fail(f"Unknown step type: {_type_name(step)}")

    def _evaluate_condition_step(self, context: ActionContext) -> Tuple[ActionResult, Optional[str]]:
        """Condition step outcome and, when it picks one, the step to go to."""
        step = context.step
        config = step.config if isinstance(step.config, ConditionStepConfig) else ConditionStepConfig()
        view = context.evaluation_view()

        if not config.condition_groups:
            return ActionResult.ok({"branchTaken": "default"}), None

        matched = self.evaluator.evaluate_condition_groups(config.condition_groups, view)
        branch_name = "none"
        target = None

        if matched and step.on_complete is not None and step.on_complete.branches:
            for branch in step.on_complete.branches:
                if not branch.is_default and self.evaluator.evaluate_condition_groups(branch.conditions, view):
                    branch_name, target = branch.name, branch.target_step_id
                    break
            else:
                default = next((b for b in step.on_complete.branches if b.is_default), None)
                if default is not None:
                    branch_name, target = default.name, default.target_step_id
        elif matched and config.true_branch:
            branch_name, target = "true", config.true_branch
        elif not matched and config.false_branch:
            branch_name, target = "false", config.false_branch

        logger.info("Condition evaluated", step_id=step.id, matched=matched, branch=branch_name)
        return ActionResult.ok({"conditionResult": matched, "branchTaken": branch_name}), target

    # ─── Transitions ──────────────────────────────────────────

    def resolve_next(self, step: Step, definition: WorkflowDefinition, view: Dict[str, Any]) -> TransitionDecision:
        """Transition after ``step``; a Parallel step continues after its last branch."""
        decision = self.resolver.resolve(step, definition, view)
        if step.type != StepType.PARALLEL:
            return decision

        branches = set(parallel_targets(step))
        if decision.next_step_id not in branches:
            return decision

        branch_steps = [s for s in (definition.get_step(b) for b in branches) if s is not None]
        following = next_by_order(max(branch_steps, key=lambda s: s.order), definition.steps)
        while following is not None and following.id in branches:
            following = next_by_order(following, definition.steps)
        return TransitionDecision(following.id if following else None, "after_parallel")

    async def _advance(
        self,
        instance_id: str,
        step: Step,
        definition: WorkflowDefinition,
        view: Dict[str, Any],
    ) -> StepOutcome:
        decision = self.resolve_next(step, definition, view)
        if decision.warning:
            await self._log(instance_id, LogEvent.TRANSITION_WARNING, decision.warning, step, level=LogLevel.WARNING)
        if decision.next_step_id is None:
            return await self._complete_workflow(instance_id)
        return decision.next_step_id

    # ─── Waiting & resuming ───────────────────────────────────

    async def _enter_wait(self, instance: WorkflowInstance, step: Step, result: ActionResult) -> ExecutionResult:
        status = WAIT_STATUS.get(result.wait_for_item_type, InstanceStatus.WAITING_FOR_INPUT)

        updates: Dict[str, Any] = {}
        if result.task_ids:
            updates["task_assignment_ids"] = list(result.task_ids)
        if result.approval_ids:
            updates["approval_ids"] = list(result.approval_ids)
        if result.output_variables:
            updates["result"] = dict(result.output_variables)
        if updates:
            await self.instances.update_step_state(instance.id, step.id, updates)

        await self._change_status(instance, status)
        item = result.wait_for_item_type.value if result.wait_for_item_type else "input"
        logger.info("Workflow waiting", step_id=step.id, waiting_for=item)
        return self._result(
            instance,
            step,
            status,
            NextAction.WAIT,
            message=f"Waiting for {item}",
            outputs=result.output_variables,
        )

    async def _schedule_retry(self, instance: WorkflowInstance, step: Step, result: ActionResult) -> ExecutionResult:
        await self.instances.update_step_state(
            instance.id,
            step.id,
            {
                "retry_count": result.retry_attempt,
                "next_retry_at": result.next_retry_at,
                "error_message": result.error,
            },
        )
        await self._log(
            instance.id,
            LogEvent.STEP_RETRY_SCHEDULED,
            f'Retry {result.retry_attempt} of step "{step.name}" scheduled at {result.next_retry_at.isoformat()}',
            step,
            level=LogLevel.WARNING,
            data={"attempt": result.retry_attempt, "nextRetryAt": result.next_retry_at.isoformat(), "error": result.error},
        )
        await self._change_status(instance, InstanceStatus.WAITING_FOR_INPUT)
        return self._result(
            instance,
            step,
            InstanceStatus.WAITING_FOR_INPUT,
            NextAction.WAIT,
            message=f"Retry scheduled at {result.next_retry_at.isoformat()}",
            error=result.error,
        )

    async def complete_waiting_step(
        self,
        instance_id: str,
        step_id: str,
        result: Optional[Dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Complete a step that was waiting (task done, approval given ...) and carry on.

        A step that is already Completed or Skipped is left alone and the
        current state is returned, so duplicate resume calls are harmless.
        """
        result = dict(result or {})
        instance = await self._require_instance(instance_id)

        state = await self.instances.get_step_state(instance_id, step_id)
        if state is not None and state.status.is_done:
            return self._already_completed(instance, step_id, state.status)

        if instance.status.is_terminal:
            raise InvalidStateError(f"Workflow instance {instance_id} is {instance.status.value}")
        definition = await self._require_definition(instance.definition_id)
        step = definition.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in workflow")

        swapped = await self.instances.transition_step_status(
            instance_id, step_id, (StepStatus.PENDING, StepStatus.IN_PROGRESS), StepStatus.COMPLETED
        )
        if not swapped:
            current = await self.instances.get_step_state(instance_id, step_id)
            return self._already_completed(instance, step_id, current.status if current else None)

        with bind_instance_context(instance.id, instance.process_id):
            try:
                await self.instances.complete_step(instance_id, step_id, result, result)
                if result:
                    await self.instances.update_variables(instance_id, result)
                await self._log(instance_id, LogEvent.STEP_COMPLETED, f'Step "{step.name}" completed', step, data=result)

                view = evaluation_view(process_fields(instance), {**instance.variables, **result})
                decision = self.resolve_next(step, definition, view)
                if decision.warning:
                    await self._log(instance_id, LogEvent.TRANSITION_WARNING, decision.warning, step, level=LogLevel.WARNING)
                if decision.next_step_id is None:
                    return await self._complete_workflow(instance_id)

                if instance.status == InstanceStatus.PAUSED:
                    following = definition.get_step(decision.next_step_id)
                    await self.instances.update(
                        instance_id,
                        {"current_step_id": following.id, "current_step_name": following.name},
                    )
                    return self._result(
                        instance,
                        following,
                        InstanceStatus.PAUSED,
                        NextAction.WAIT,
                        message="Step completed; workflow is paused",
                    )

                await self._change_status(instance, InstanceStatus.RUNNING)
            except Exception as e:
                logger.exception("Error completing waiting step", step_id=step_id)
                return await self._fail_instance(instance_id, step_id, str(e) or type(e).__name__, step.name)

        return await self.execute_step(instance_id, decision.next_step_id)

    def _already_completed(self, instance: WorkflowInstance, step_id: str, status: Optional[StepStatus]) -> ExecutionResult:
        logger.info(
            "Step already completed, skipping duplicate completion",
            instance_id=instance.id,
            step_id=step_id,
            step_status=status.value if status else None,
        )
        return ExecutionResult(
            success=True,
            instance_id=instance.id,
            status=instance.status,
            next_action=NextAction.COMPLETE if instance.status == InstanceStatus.COMPLETED else NextAction.CONTINUE,
            current_step_id=instance.current_step_id,
            current_step_name=instance.current_step_name,
            message="Step already completed (idempotent)",
        )

    async def resume_workflow(self, instance_id: str, trigger_data: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """Continue a Paused or Waiting instance at its current step.

        Raises:
            InvalidStateError: The instance is not paused or waiting
        """
        instance = await self._require_instance(instance_id)
        if instance.status not in RESUMABLE_STATUSES:
            raise InvalidStateError(f"Workflow cannot be resumed from status: {instance.status.value}")

        with bind_instance_context(instance.id, instance.process_id):
            await self._change_status(instance, InstanceStatus.RUNNING)
            if trigger_data:
                await self.instances.update_variables(instance_id, trigger_data)
            await self.instances.add_log(
                instance_id,
                LogEvent.WORKFLOW_RESUMED.value,
                "Workflow execution resumed",
                step_id=instance.current_step_id,
                step_name=instance.current_step_name,
                data=trigger_data,
            )

        if instance.current_step_id:
            return await self.execute_step(instance_id, instance.current_step_id)
        return self._result(instance, None, InstanceStatus.RUNNING, NextAction.CONTINUE, message="Workflow resumed")

    # ─── Control operations ───────────────────────────────────

    async def pause_workflow(self, instance_id: str, reason: Optional[str] = None, user_id: Optional[str] = None) -> ExecutionResult:
        instance = await self._require_instance(instance_id)
        if instance.status != InstanceStatus.RUNNING and not instance.status.is_waiting:
            raise InvalidStateError(f"Workflow cannot be paused from status: {instance.status.value}")

        with bind_instance_context(instance.id, instance.process_id):
            await self._change_status(instance, InstanceStatus.PAUSED)
            await self.instances.add_log(
                instance_id,
                LogEvent.WORKFLOW_PAUSED.value,
                f"Workflow paused{': ' + reason if reason else ''}",
                step_id=instance.current_step_id,
                step_name=instance.current_step_name,
                user_id=user_id,
            )
        return self._result(instance, None, InstanceStatus.PAUSED, NextAction.WAIT, message="Workflow paused")

    async def cancel_workflow(self, instance_id: str, reason: Optional[str] = None, user_id: Optional[str] = None) -> ExecutionResult:
        """Cancel an unfinished instance. In-flight handler calls are not interrupted."""
        instance = await self._require_instance(instance_id)
        if instance.status.is_terminal:
            raise InvalidStateError(f"Workflow cannot be cancelled from status: {instance.status.value}")

        with bind_instance_context(instance.id, instance.process_id):
            for state in await self.instances.get_step_states(instance_id):
                if state.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
                    await self.instances.transition_step_status(
                        instance_id, state.step_id, (state.status,), StepStatus.CANCELLED
                    )

            await self.instances.update(instance_id, {"completed_date": self._now(), "error_message": reason})
            await self._change_status(instance, InstanceStatus.CANCELLED)
            await self.instances.add_log(
                instance_id,
                LogEvent.WORKFLOW_CANCELLED.value,
                f"Workflow cancelled{': ' + reason if reason else ''}",
                level=LogLevel.WARNING,
                user_id=user_id,
            )
            logger.info("Workflow cancelled", reason=reason)
        return self._result(instance, None, InstanceStatus.CANCELLED, NextAction.COMPLETE, message="Workflow cancelled")

    async def retry_failed_step(self, instance_id: str) -> ExecutionResult:
        """Re-run the step a Failed instance stopped at, from a clean step state."""
        instance = await self._require_instance(instance_id)
        if instance.status != InstanceStatus.FAILED:
            raise InvalidStateError(f"Only failed workflows can be retried (status: {instance.status.value})")

        step_id = instance.error_step_id or instance.current_step_id
        if not step_id:
            raise InvalidStateError(f"Workflow instance {instance_id} has no failed step to retry")

        with bind_instance_context(instance.id, instance.process_id):
            await self.instances.update_step_state(
                instance_id,
                step_id,
                {
                    "status": StepStatus.PENDING,
                    "error_message": None,
                    "retry_count": 0,
                    "next_retry_at": None,
                    "started_date": None,
                    "completed_date": None,
                },
            )
            await self.instances.update(
                instance_id,
                {"error_message": None, "error_step_id": None, "completed_date": None},
            )
            await self._change_status(instance, InstanceStatus.RUNNING)
            logger.info("Retrying failed step", step_id=step_id)

        return await self.execute_step(instance_id, step_id)

    async def get_workflow_status(self, instance_id: str) -> Dict[str, Any]:
        instance = await self._require_instance(instance_id)
        states = await self.instances.get_step_states(instance_id)
        return {
            **instance.to_dict(),
            "steps": [state.to_dict() for state in sorted(states, key=lambda s: s.order)],
        }

    # ─── Completion & failure ─────────────────────────────────

    async def _complete_workflow(self, instance_id: str) -> ExecutionResult:
        instance = await self._require_instance(instance_id)
        completed = await self._completed_step_count(instance_id)
        await self.instances.update(
            instance_id,
            {
                "completed_date": self._now(),
                "progress_percentage": 100,
                "completed_steps": completed,
            },
        )
        await self._change_status(instance, InstanceStatus.COMPLETED)
        await self.instances.add_log(
            instance_id, LogEvent.WORKFLOW_COMPLETED.value, "Workflow execution completed successfully"
        )
        logger.info("Workflow completed", completed_steps=completed, total_steps=instance.total_steps)

        await self._update_definition_stats(instance.definition_id)

        finished = await self._require_instance(instance_id)
        await self.notifier.workflow_completed(finished)
        await self._resume_parent(finished)

        return ExecutionResult(
            success=True,
            instance_id=instance_id,
            status=InstanceStatus.COMPLETED,
            next_action=NextAction.COMPLETE,
            message="Workflow completed successfully",
        )

    async def _update_definition_stats(self, definition_id: str) -> None:
        instances = await self.instances.list_for_definition(definition_id)
        finished = [i for i in instances if i.status.is_terminal]
        if not finished:
            return

        completed = [i for i in finished if i.status == InstanceStatus.COMPLETED]
        await self.definitions.update_success_rate(
            definition_id, round(len(completed) / len(finished) * 100, 1)
        )

        durations = [
            (i.completed_date - i.started_date).total_seconds() / 3600
            for i in completed
            if i.started_date and i.completed_date
        ]
        if durations:
            await self.definitions.update_average_completion_time(
                definition_id, round(sum(durations) / len(durations), 2)
            )

    async def _resume_parent(self, child: WorkflowInstance) -> None:
        """Complete the parent's CallWorkflow step when it is still waiting on this child."""
        parent_id, parent_step_id = child.parent_instance_id, child.parent_step_id
        if not parent_id or not parent_step_id:
            return

        parent = await self.instances.get_by_id(parent_id)
        if parent is None or not parent.status.is_waiting or parent.current_step_id != parent_step_id:
            return
        state = await self.instances.get_step_state(parent_id, parent_step_id)
        if state is None or state.status.is_done:
            return

        definition = await self._require_definition(parent.definition_id)
        step = definition.get_step(parent_step_id)
        if step is None:
            return

        outcome = await self.sub_workflows.on_sub_workflow_completed(child, step)
        logger.info("Resuming parent workflow after sub-workflow", parent_instance_id=parent_id, child_instance_id=child.id)
        await self.complete_waiting_step(parent_id, parent_step_id, outcome.output_variables)

    async def _fail_step(
        self,
        instance: WorkflowInstance,
        step: Step,
        error: str,
        outputs: Optional[Dict[str, Any]] = None,
    ) -> ExecutionResult:
        await self.instances.fail_step(instance.id, step.id, error)
        await self._log(instance.id, LogEvent.STEP_FAILED, f'Step "{step.name}" failed: {error}', step, level=LogLevel.ERROR)
        result = await self._fail_instance(instance.id, step.id, error, step.name)
        result.outputs = dict(outputs or {})
        return result

    async def _fail_instance(
        self,
        instance_id: str,
        step_id: Optional[str],
        error: str,
        step_name: Optional[str] = None,
    ) -> ExecutionResult:
        if step_id:
            state = await self.instances.get_step_state(instance_id, step_id)
            if state is not None and state.status != StepStatus.FAILED:
                await self.instances.fail_step(instance_id, step_id, error)

        instance = await self._require_instance(instance_id)
        await self.instances.set_error(instance_id, step_id, error)
        await self.instances.add_log(
            instance_id,
            LogEvent.WORKFLOW_FAILED.value,
            f"Workflow failed: {error}",
            level=LogLevel.ERROR,
            step_id=step_id,
            step_name=step_name,
        )
        logger.error("Workflow failed", step_id=step_id, error=error)

        await self.notifier.workflow_failed(instance, error)
        if instance.status != InstanceStatus.FAILED:
            await self._sync(instance, InstanceStatus.FAILED)

        return ExecutionResult(
            success=False,
            instance_id=instance_id,
            status=InstanceStatus.FAILED,
            next_action=NextAction.ERROR,
            current_step_id=step_id,
            current_step_name=step_name,
            error=error,
        )

    # ─── Status sync ──────────────────────────────────────────

    async def _change_status(self, instance: WorkflowInstance, status: InstanceStatus) -> None:
        """Persist a status transition and push it to the process record."""
        if instance.status == status:
            return
        await self.instances.update_status(instance.id, status)
        instance.status = status
        await self._sync(instance, status)

    async def _sync(self, instance: WorkflowInstance, status: InstanceStatus) -> None:
        # Child instances share the parent's process; only the parent reports
        if instance.parent_instance_id:
            return
        await self.status_sync.sync(instance.process_id, status, instance.id)

    def get_sync_failure_stats(self) -> DLQStats:
        return self.status_sync.get_failure_stats()

    def get_failed_sync_operations(self) -> List[DeadLetterItem]:
        return self.status_sync.get_failed_operations()

    async def retry_failed_sync(self, item_id: str) -> bool:
        return await self.status_sync.retry_failed(item_id)

    async def retry_all_failed_syncs(self) -> Dict[str, int]:
        return await self.status_sync.retry_all_failed()

    def clear_sync_failure_dlq(self) -> int:
        return self.status_sync.clear_failures()

    # ─── Helpers ──────────────────────────────────────────────

    async def _require_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.instances.get_by_id(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        return instance

    async def _require_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.definitions.get_by_id(definition_id)
        if definition is None:
            raise NotFoundError(f"Workflow definition {definition_id} not found")
        return definition

    async def _completed_step_count(self, instance_id: str) -> int:
        states = await self.instances.get_step_states(instance_id)
        return sum(1 for state in states if state.status.is_done)

    async def _log(
        self,
        instance_id: str,
        event: LogEvent,
        message: str,
        step: Optional[Step] = None,
        level: LogLevel = LogLevel.INFO,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.instances.add_log(
            instance_id,
            event.value,
            message,
            level=level,
            step_id=step.id if step else None,
            step_name=step.name if step else None,
            data=data,
        )

    @staticmethod
    def _result(
        instance: WorkflowInstance,
        step: Optional[Step],
        status: InstanceStatus,
        next_action: NextAction,
        message: Optional[str] = None,
        error: Optional[str] = None,
        outputs: Optional[Dict[str, Any]] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            success=True,
            instance_id=instance.id,
            status=status,
            next_action=next_action,
            current_step_id=step.id if step else instance.current_step_id,
            current_step_name=step.name if step else instance.current_step_name,
            message=message,
            error=error,
            outputs=dict(outputs or {}),
        )


def _type_name(step: Step) -> str:
    return step.type.value if step.type else "Unknown"
