"""Transition resolution: which step runs after the current one."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from core.constants import TransitionType
from core.exceptions import TransitionError
from workflow.conditions import ConditionEvaluator
from workflow.models import Step, WorkflowDefinition
from workflow.validator import next_by_order

logger = structlog.get_logger(__name__)


@dataclass
class TransitionDecision:
    next_step_id: Optional[str]
    reason: str
    branch_name: Optional[str] = None
    warning: Optional[str] = None

    @property
    def ends_workflow(self) -> bool:
        return self.next_step_id is None


class TransitionResolver:
    """Maps (step, definition, evaluation view) to the next step id.

    Pure apart from logging. ``fail_on_unmatched_branch`` turns a branch
    transition with no matching branch and no default into a
    ``TransitionError`` instead of ending the workflow with a warning.
    """

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None, fail_on_unmatched_branch: bool = False):
        self.evaluator = evaluator or ConditionEvaluator()
        self.fail_on_unmatched_branch = fail_on_unmatched_branch

    def resolve(
        self,
        step: Step,
        definition: WorkflowDefinition,
        view: Optional[Dict[str, Any]] = None,
    ) -> TransitionDecision:
        decision = self._decide(step, definition, view or {})
        if decision.next_step_id is not None and definition.get_step(decision.next_step_id) is None:
            raise TransitionError(
                f'Step "{step.name}" transitions to unknown step: {decision.next_step_id}'
            )
        return decision

    def _decide(self, step: Step, definition: WorkflowDefinition, view: Dict[str, Any]) -> TransitionDecision:
        transition = step.on_complete

        if transition is None or transition.type == TransitionType.NEXT:
            following = next_by_order(step, definition.steps)
            return TransitionDecision(following.id if following else None, "next")

        if transition.type == TransitionType.GOTO:
            return TransitionDecision(transition.target_step_id, "goto")

        if transition.type == TransitionType.END:
            return TransitionDecision(None, "end")

        if transition.type == TransitionType.PARALLEL:
            # Nominal only: the Parallel handler dispatches the targets itself
            targets = transition.parallel_step_ids
            return TransitionDecision(targets[0] if targets else None, "parallel")

        for branch in transition.branches:
            if branch.is_default:
                continue
            if self.evaluator.evaluate_condition_groups(branch.conditions, view):
                return TransitionDecision(branch.target_step_id, "branch", branch_name=branch.name)

        default = next((b for b in transition.branches if b.is_default), None)
        if default is not None:
            return TransitionDecision(default.target_step_id, "default", branch_name=default.name)

        message = f'No branch of step "{step.name}" matched and no default branch is defined'
        if self.fail_on_unmatched_branch:
            raise TransitionError(message)
        logger.warning("Branch transition matched nothing, ending workflow", step_id=step.id)
        return TransitionDecision(None, "no_match", warning=message)
