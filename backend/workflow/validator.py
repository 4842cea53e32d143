"""
Workflow definition validation.

Runs standalone (authoring feedback) and before a definition is published
or its steps are replaced. Problems are returned as data: validation never
raises for bad definition content.

Checks, in order:
1. Required header fields (title, code, process type)
2. Steps parse and are non-empty (short-circuits)
3. Per-step structure and step-type configuration
4. Exactly one Start step, at least one End step
5. Every referenced step id exists
6. Reachability from Start (warnings)
7. Cycles without an exit condition (warnings)
8. End reachable from Start (error)
"""

import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union
from urllib.parse import urlparse

import pydantic
import structlog

from core.constants import HTTP_METHODS, ErrorAction, StepType, TransitionType
from core.exceptions import DefinitionValidationError
from workflow.models import (
    ActionConfig,
    ApprovalConfig,
    CallWorkflowConfig,
    ConditionStepConfig,
    ForEachConfig,
    NotificationConfig,
    ParallelConfig,
    SetVariableConfig,
    Step,
    TaskConfig,
    WaitConfig,
    WaitForTasksConfig,
    WebhookConfig,
    WorkflowDefinition,
    parse_steps,
)

logger = structlog.get_logger(__name__)


@dataclass
class ValidationIssue:
    code: str
    message: str
    field: Optional[str] = None
    step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.field:
            data["field"] = self.field
        if self.step_id:
            data["stepId"] = self.step_id
        return data


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


# ─── Graph helpers (shared with the transition resolver) ───────────────


def next_by_order(step: Step, steps: List[Step]) -> Optional[Step]:
    """The step with the smallest order strictly greater than ``step.order``."""
    later = [s for s in steps if s.order > step.order]
    return min(later, key=lambda s: s.order) if later else None


def successor_ids(step: Step, steps: List[Step]) -> List[str]:
    """Every step id control can flow to after ``step``."""
    ids: List[str] = []
    transition = step.on_complete

    if transition is None or transition.type == TransitionType.NEXT:
        following = next_by_order(step, steps)
        if following:
            ids.append(following.id)
    elif transition.type == TransitionType.GOTO:
        if transition.target_step_id:
            ids.append(transition.target_step_id)
    elif transition.type == TransitionType.BRANCH:
        ids.extend(b.target_step_id for b in transition.branches if b.target_step_id)
    elif transition.type == TransitionType.PARALLEL:
        ids.extend(transition.parallel_step_ids)

    if isinstance(step.config, ParallelConfig):
        ids.extend(step.config.parallel_step_ids)
    if isinstance(step.config, ConditionStepConfig):
        ids.extend(t for t in (step.config.true_branch, step.config.false_branch) if t)
    return ids


def _has_exit_condition(step: Step) -> bool:
    return bool(step.on_complete and any(b.has_conditions for b in step.on_complete.branches))


class DefinitionValidator:
    """Validates workflow definitions. Stateless; safe to share."""

    def validate(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> ValidationResult:
        result = ValidationResult()

        header, raw_steps = self._split(definition)
        self._check_required(header, result)

        try:
            steps = parse_steps(raw_steps)
        except ValueError as e:
            # JSONDecodeError and pydantic.ValidationError are both ValueErrors
            if isinstance(e, pydantic.ValidationError):
                result.errors.append(ValidationIssue("INVALID_STEP", f"Steps contain an invalid step: {e.errors()[0]['msg']}", field="Steps"))
            else:
                result.errors.append(ValidationIssue("INVALID_JSON", "Steps contains invalid JSON", field="Steps"))
            return result

        if not steps:
            result.errors.append(ValidationIssue("EMPTY", "At least one step is required", field="Steps"))
            return result

        step_map: Dict[str, Step] = {}
        seen: Set[str] = set()
        starts: List[Step] = []
        ends: List[Step] = []

        for index, step in enumerate(steps):
            if step.id in seen:
                result.errors.append(ValidationIssue("DUPLICATE_ID", f"Duplicate step ID: {step.id}", step_id=step.id))
            seen.add(step.id)
            step_map[step.id] = step

            if not step.name.strip():
                result.errors.append(ValidationIssue("MISSING_NAME", f"Step {index + 1} is missing a name", step_id=step.id))
            if step.type is None:
                result.errors.append(
                    ValidationIssue("MISSING_TYPE", f"Step {step.name or index + 1} is missing a type", step_id=step.id)
                )
            elif step.type == StepType.START:
                starts.append(step)
            elif step.type == StepType.END:
                ends.append(step)

            self._check_step_config(step, result)

        if len(starts) != 1:
            message = "Workflow must have a Start step" if not starts else "Workflow must have exactly one Start step"
            result.errors.append(ValidationIssue("NO_START", message))
        if not ends:
            result.errors.append(ValidationIssue("NO_END", "Workflow must have an End step"))

        self._check_references(steps, seen, result)

        if result.errors:
            return result

        start = starts[0]
        reachable = self._reachable_from(start.id, step_map, steps)
        for step in steps:
            if step.id not in reachable:
                result.warnings.append(
                    ValidationIssue("UNREACHABLE", f'Step "{step.name or step.id}" is not reachable from Start step', step_id=step.id)
                )

        for step_id in self._find_unguarded_cycles(steps, step_map):
            name = step_map[step_id].name or step_id
            result.warnings.append(
                ValidationIssue("POTENTIAL_LOOP", f'Step "{name}" may be part of an infinite loop', step_id=step_id)
            )

        if not any(end.id in reachable for end in ends):
            result.errors.append(
                ValidationIssue(
                    "END_UNREACHABLE",
                    "End step is not reachable from Start step - workflow will never complete",
                )
            )

        return result

    def validate_step_quick(self, step: Union[Step, Dict[str, Any]], prefix: str = "") -> ValidationResult:
        """Structure and configuration checks for a single step, no graph checks."""
        result = ValidationResult()
        if not isinstance(step, Step):
            step = Step.model_validate(step)
        if not step.id:
            result.errors.append(ValidationIssue(f"{prefix}MISSING_ID", "Step is missing an id"))
        if not step.name.strip():
            result.errors.append(ValidationIssue(f"{prefix}MISSING_NAME", "Step is missing a name", step_id=step.id))
        if step.type is None:
            result.errors.append(ValidationIssue(f"{prefix}MISSING_TYPE", "Step is missing a type", step_id=step.id))
        self._check_step_config(step, result, prefix)
        return result

    def validate_for_publish(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> ValidationResult:
        """Validate and raise when the definition cannot be activated.

        Raises:
            DefinitionValidationError: carrying the ValidationResult
        """
        result = self.validate(definition)
        if not result.valid:
            raise DefinitionValidationError(result)
        return result

    # ─── Checks ──────────────────────────────────────────────────────

    @staticmethod
    def _split(definition: Union[WorkflowDefinition, Dict[str, Any]]):
        if isinstance(definition, WorkflowDefinition):
            return definition, definition.steps

        raw = dict(definition)
        raw_steps = raw.pop("steps", None)
        if raw_steps is None:
            raw_steps = raw.pop("Steps", None)
        header = WorkflowDefinition.model_validate({k: v for k, v in raw.items() if k not in ("variables", "triggerConditions", "trigger_conditions")})
        return header, raw_steps

    @staticmethod
    def _check_required(header: WorkflowDefinition, result: ValidationResult) -> None:
        if not header.title.strip():
            result.errors.append(ValidationIssue("REQUIRED", "Title is required", field="Title"))
        if not header.workflow_code.strip():
            result.errors.append(ValidationIssue("REQUIRED", "Workflow code is required", field="WorkflowCode"))
        if not header.process_type:
            result.errors.append(ValidationIssue("REQUIRED", "Process type is required", field="ProcessType"))

    def _check_step_config(self, step: Step, result: ValidationResult, prefix: str = "") -> None:
        config = step.config
        name = step.name

        def error(code: str, message: str) -> None:
            result.errors.append(ValidationIssue(prefix + code, message, step_id=step.id))

        def warning(code: str, message: str) -> None:
            result.warnings.append(ValidationIssue(prefix + code, message, step_id=step.id))

        if isinstance(config, TaskConfig):
            if not (config.has_assignee or config.assignee_type):
                error(
                    "MISSING_ASSIGNEE",
                    f'Task step "{name}" must have an assignee configured '
                    "(assigneeId, assigneeType, assigneeRole, or assigneeField)",
                )
            if not config.due_days_from_now and not config.due_days_field:
                warning("NO_DUE_DATE", f'Task step "{name}" has no due date configured')
            if step.type == StepType.ASSIGN_TASKS and not config.task_template_id:
                warning("MISSING_TEMPLATE", f'AssignTasks step "{name}" has no task template configured')

        elif isinstance(config, ApprovalConfig):
            if not config.has_approver:
                error("MISSING_APPROVER", f'Approval step "{name}" must have approvers configured')

        elif isinstance(config, NotificationConfig):
            if not config.has_recipients:
                error("MISSING_RECIPIENTS", f'Notification step "{name}" must have recipients configured')
            if not config.message_template and not config.notification_subject:
                warning("MISSING_TEMPLATE", f'Notification step "{name}" has no template or subject configured')

        elif isinstance(config, ConditionStepConfig):
            if not config.condition_groups:
                error("MISSING_CONDITIONS", f'Condition step "{name}" has no conditions defined')

        elif isinstance(config, SetVariableConfig):
            if not config.variable_name:
                error("MISSING_VARIABLE_NAME", f'SetVariable step "{name}" must specify a variable name')

        elif isinstance(config, WaitConfig):
            if not config.wait_hours and not config.wait_until_field:
                warning("NO_WAIT_DURATION", f'Wait step "{name}" has no duration configured')

        elif isinstance(config, WaitForTasksConfig):
            if not config.wait_for_task_ids:
                error("MISSING_TASK_IDS", f'WaitForTasks step "{name}" must reference task step IDs')
            timeout = config.effective_timeout_hours
            if timeout is not None and timeout < 0:
                error("INVALID_TIMEOUT", f'WaitForTasks step "{name}" has a negative timeout')

        elif isinstance(config, ParallelConfig):
            transition_targets = step.on_complete.parallel_step_ids if step.on_complete else []
            if not config.parallel_step_ids and not transition_targets:
                error("MISSING_PARALLEL_STEPS", f'Parallel step "{name}" must define parallel step IDs')

        elif isinstance(config, ForEachConfig):
            if not config.collection_path:
                error("MISSING_COLLECTION", f'ForEach step "{name}" must specify a collection path')
            if not config.inner_steps:
                error("MISSING_INNER_STEPS", f'ForEach step "{name}" must define inner steps')
            for inner in config.inner_steps:
                inner_result = self.validate_step_quick(inner, prefix="INNER_")
                result.errors.extend(inner_result.errors)
                result.warnings.extend(inner_result.warnings)
            if config.max_parallel is not None and config.max_parallel < 1:
                error("INVALID_MAX_PARALLEL", f'ForEach step "{name}" must allow at least one parallel iteration')

        elif isinstance(config, CallWorkflowConfig):
            if not config.sub_workflow_id and not config.sub_workflow_code:
                error(
                    "MISSING_WORKFLOW_REF",
                    f'CallWorkflow step "{name}" must reference a workflow (subWorkflowId or subWorkflowCode)',
                )

        elif isinstance(config, WebhookConfig):
            self._check_webhook(config, name, error, warning)

        elif isinstance(config, ActionConfig):
            if not config.action_type:
                error("MISSING_ACTION_TYPE", f'Action step "{name}" must specify an action type')

        if step.on_complete and step.on_complete.type == TransitionType.BRANCH:
            branches = step.on_complete.branches
            if branches and not any(b.is_default for b in branches):
                warning("BRANCH_NO_DEFAULT", f'Step "{name}" has branches but no default branch')

        policy = step.error_policy
        if policy and policy.action == ErrorAction.GOTO and not policy.goto_step_id:
            error("MISSING_GOTO_TARGET", f'Step "{name}" error policy is goto but has no target step')

    @staticmethod
    def _check_webhook(config: WebhookConfig, name: str, error, warning) -> None:
        if not config.webhook_url:
            error("MISSING_WEBHOOK_URL", f'Webhook step "{name}" must have a URL configured')
        elif "{{" not in config.webhook_url:
            parsed = urlparse(config.webhook_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                error("INVALID_WEBHOOK_URL", f'Webhook step "{name}" has an invalid URL: {config.webhook_url}')
        if config.webhook_method.upper() not in HTTP_METHODS:
            error("INVALID_HTTP_METHOD", f'Webhook step "{name}" has an invalid HTTP method: {config.webhook_method}')
        if config.webhook_timeout is not None and config.webhook_timeout <= 0:
            error("INVALID_TIMEOUT", f'Webhook step "{name}" must have a positive timeout')
        if config.webhook_body_template and "{{" not in config.webhook_body_template:
            try:
                json.loads(config.webhook_body_template)
            except ValueError:
                warning("INVALID_BODY_TEMPLATE", f'Webhook step "{name}" body template is not valid JSON')

    @staticmethod
    def _check_references(steps: List[Step], ids: Set[str], result: ValidationResult) -> None:
        for step in steps:
            transition = step.on_complete
            if transition is not None:
                if transition.type == TransitionType.GOTO and transition.target_step_id:
                    if transition.target_step_id not in ids:
                        result.errors.append(
                            ValidationIssue(
                                "INVALID_TRANSITION",
                                f'Step "{step.name}" references non-existent step: {transition.target_step_id}',
                                step_id=step.id,
                            )
                        )
                if transition.type == TransitionType.BRANCH:
                    for position, branch in enumerate(transition.branches, start=1):
                        if branch.target_step_id and branch.target_step_id not in ids:
                            result.errors.append(
                                ValidationIssue(
                                    "INVALID_BRANCH_TARGET",
                                    f'Step "{step.name}" branch {position} references non-existent step: {branch.target_step_id}',
                                    step_id=step.id,
                                )
                            )
                if transition.type == TransitionType.PARALLEL:
                    for target in transition.parallel_step_ids:
                        if target not in ids:
                            result.errors.append(
                                ValidationIssue(
                                    "INVALID_PARALLEL_TARGET",
                                    f'Step "{step.name}" references non-existent parallel step: {target}',
                                    step_id=step.id,
                                )
                            )

            config = step.config
            if isinstance(config, WaitForTasksConfig):
                for target in config.wait_for_task_ids:
                    if target not in ids:
                        result.errors.append(
                            ValidationIssue(
                                "INVALID_TASK_REFERENCE",
                                f'WaitForTasks step "{step.name}" references non-existent step: {target}',
                                step_id=step.id,
                            )
                        )
            if isinstance(config, ParallelConfig):
                for target in config.parallel_step_ids:
                    if target not in ids:
                        result.errors.append(
                            ValidationIssue(
                                "INVALID_PARALLEL_STEP",
                                f'Parallel step "{step.name}" references non-existent step: {target}',
                                step_id=step.id,
                            )
                        )
            if isinstance(config, ConditionStepConfig):
                for target in (config.true_branch, config.false_branch):
                    if target and target not in ids:
                        result.errors.append(
                            ValidationIssue(
                                "INVALID_BRANCH_TARGET",
                                f'Condition step "{step.name}" references non-existent step: {target}',
                                step_id=step.id,
                            )
                        )

            policy = step.error_policy
            if policy and policy.action == ErrorAction.GOTO and policy.goto_step_id and policy.goto_step_id not in ids:
                result.errors.append(
                    ValidationIssue(
                        "INVALID_ERROR_TARGET",
                        f'Step "{step.name}" error policy references non-existent step: {policy.goto_step_id}',
                        step_id=step.id,
                    )
                )

    @staticmethod
    def _reachable_from(start_id: str, step_map: Dict[str, Step], steps: List[Step]) -> Set[str]:
        reachable: Set[str] = set()
        queue = deque([start_id])
        while queue:
            current_id = queue.popleft()
            if current_id in reachable:
                continue
            reachable.add(current_id)
            current = step_map.get(current_id)
            if current is None:
                continue
            for next_id in successor_ids(current, steps):
                if next_id not in reachable:
                    queue.append(next_id)
        return reachable

    @staticmethod
    def _find_unguarded_cycles(steps: List[Step], step_map: Dict[str, Step]) -> List[str]:
        """Steps on a cycle in which no step has a conditioned branch.

        Iterative DFS with an explicit path so long definitions cannot hit
        the recursion limit. A back edge closes the cycle formed by the
        path segment from its target to the current step.
        """
        flagged: List[str] = []
        visited: Set[str] = set()

        for root in steps:
            if root.id in visited:
                continue
            path: List[str] = []
            on_path: Set[str] = set()
            stack = [(root.id, None)]

            while stack:
                step_id, successors = stack.pop()
                if successors is None:
                    if step_id in visited:
                        continue
                    visited.add(step_id)
                    path.append(step_id)
                    on_path.add(step_id)
                    step = step_map.get(step_id)
                    nexts = successor_ids(step, steps) if step and step.type != StepType.END else []
                    stack.append((step_id, iter(nexts)))
                    continue

                advanced = False
                for next_id in successors:
                    if next_id in on_path:
                        cycle = path[path.index(next_id):]
                        if not any(_has_exit_condition(step_map[s]) for s in cycle if s in step_map):
                            for member in cycle:
                                if member not in flagged:
                                    flagged.append(member)
                    elif next_id not in visited and next_id in step_map:
                        stack.append((step_id, successors))
                        stack.append((next_id, None))
                        advanced = True
                        break
                if not advanced:
                    path.pop()
                    on_path.discard(step_id)

        order = {s.id: i for i, s in enumerate(steps)}
        return sorted(flagged, key=lambda s: order.get(s, 0))
