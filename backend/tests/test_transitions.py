"""Tests for transition resolution."""

import pytest

from conftest import make_definition, make_step
from core.exceptions import TransitionError
from workflow.transitions import TransitionResolver


def branching(branches):
    return make_definition(
        [
            make_step("start", "Start", 1, onComplete={"type": "branch", "branches": branches}),
            make_step("it", "SetVariable", 2, config={"variableName": "a"}),
            make_step("hr", "SetVariable", 3, config={"variableName": "b"}),
            make_step("end", "End", 4),
        ]
    )


IT_BRANCH = {
    "name": "IT",
    "targetStepId": "it",
    "conditions": [{"conditions": [{"field": "department", "operator": "eq", "value": "IT"}]}],
}
DEFAULT_BRANCH = {"name": "Other", "targetStepId": "hr", "isDefault": True}


@pytest.mark.unit
class TestTransitionResolver:
    def test_next_by_order(self):
        definition = make_definition(
            [make_step("end", "End", 9), make_step("start", "Start", 1), make_step("mid", "SetVariable", 5)]
        )
        decision = TransitionResolver().resolve(definition.get_step("start"), definition)
        assert decision.next_step_id == "mid"
        assert decision.reason == "next"

    def test_last_step_ends_workflow(self):
        definition = make_definition([make_step("start", "Start", 1), make_step("end", "End", 2)])
        decision = TransitionResolver().resolve(definition.get_step("end"), definition)
        assert decision.ends_workflow

    def test_goto(self):
        definition = make_definition(
            [
                make_step("start", "Start", 1, onComplete={"type": "goto", "targetStepId": "end"}),
                make_step("skipped", "SetVariable", 2),
                make_step("end", "End", 3),
            ]
        )
        assert TransitionResolver().resolve(definition.get_step("start"), definition).next_step_id == "end"

    def test_end_transition(self):
        definition = make_definition(
            [make_step("start", "Start", 1, onComplete={"type": "end"}), make_step("end", "End", 2)]
        )
        assert TransitionResolver().resolve(definition.get_step("start"), definition).ends_workflow

    def test_first_matching_branch_wins(self):
        definition = branching([IT_BRANCH, DEFAULT_BRANCH])
        decision = TransitionResolver().resolve(definition.get_step("start"), definition, {"department": "it"})
        assert decision.next_step_id == "it"
        assert decision.branch_name == "IT"

    def test_default_branch_is_used_when_nothing_matches(self):
        # The default is listed first; it is still only a fallback
        definition = branching([DEFAULT_BRANCH, IT_BRANCH])
        decision = TransitionResolver().resolve(definition.get_step("start"), definition, {"department": "Sales"})
        assert decision.next_step_id == "hr"
        assert decision.reason == "default"

    def test_no_match_without_default_ends_with_warning(self):
        definition = branching([IT_BRANCH])
        decision = TransitionResolver().resolve(definition.get_step("start"), definition, {"department": "Sales"})
        assert decision.ends_workflow
        assert decision.reason == "no_match"
        assert "no default branch" in decision.warning

    def test_no_match_can_be_an_error(self):
        definition = branching([IT_BRANCH])
        resolver = TransitionResolver(fail_on_unmatched_branch=True)
        with pytest.raises(TransitionError):
            resolver.resolve(definition.get_step("start"), definition, {"department": "Sales"})

    def test_unknown_target_raises(self):
        definition = make_definition(
            [make_step("start", "Start", 1, onComplete={"type": "goto", "targetStepId": "ghost"}), make_step("end", "End", 2)]
        )
        with pytest.raises(TransitionError, match="unknown step: ghost"):
            TransitionResolver().resolve(definition.get_step("start"), definition)
