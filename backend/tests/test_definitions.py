"""Tests for DefinitionService: validation gates, publishing, defaults and versions."""

import pytest

from conftest import approval_flow, make_definition, make_step
from core.exceptions import ConflictError, DefinitionValidationError, NotFoundError
from workflow.definitions import DefinitionService


@pytest.fixture
def service(definitions):
    return DefinitionService(definitions)


def trigger(department, priority):
    return {
        "conditions": [{"conditions": [{"field": "department", "operator": "eq", "value": department}]}],
        "priority": priority,
    }


# ─── Create & update ───

@pytest.mark.unit
class TestCreateAndUpdate:
    @pytest.mark.asyncio
    async def test_create_valid_definition(self, service, definitions):
        created = await service.create(approval_flow(usageCount=12))
        assert created.usage_count == 0
        assert (await definitions.get_by_id(created.id)).title == "Joiner Onboarding"

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_definition(self, service, definitions):
        invalid = make_definition([make_step("end", "End", 1)])
        with pytest.raises(DefinitionValidationError) as exc:
            await service.create(invalid)

        assert "Workflow must have a Start step" in str(exc.value)
        assert not exc.value.result.valid
        assert await definitions.get_by_id("def-joiner") is None

    @pytest.mark.asyncio
    async def test_create_rejects_two_start_steps(self, service):
        invalid = make_definition(
            [make_step("start", "Start", 1), make_step("again", "Start", 2), make_step("end", "End", 3)]
        )
        with pytest.raises(DefinitionValidationError) as exc:
            await service.create(invalid)
        assert "Workflow must have exactly one Start step" in str(exc.value)

    @pytest.mark.asyncio
    async def test_update_plain_fields(self, service):
        await service.create(approval_flow())
        updated = await service.update("def-joiner", {"title": "Joiner v2", "description": "Second cut"})
        assert updated.title == "Joiner v2"
        assert updated.description == "Second cut"

    @pytest.mark.asyncio
    async def test_update_steps_revalidates(self, service):
        await service.create(approval_flow())
        with pytest.raises(DefinitionValidationError):
            await service.update("def-joiner", {"steps": [make_step("approve", "Approval", 1, config={"approverRole": "manager"})]})

    @pytest.mark.asyncio
    async def test_update_steps_from_json(self, service):
        await service.create(approval_flow())
        steps = '[{"id": "start", "name": "Start", "type": "Start", "order": 1}, {"id": "end", "name": "End", "type": "End", "order": 2}]'
        updated = await service.update("def-joiner", {"steps": steps})
        assert [s.id for s in updated.steps] == ["start", "end"]

    @pytest.mark.asyncio
    async def test_update_steps_invalid_json(self, service):
        await service.create(approval_flow())
        with pytest.raises(DefinitionValidationError, match="invalid JSON"):
            await service.update("def-joiner", {"steps": "[{not json"})

    @pytest.mark.asyncio
    async def test_get_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.get("missing")


# ─── Publishing & defaults ───

@pytest.mark.unit
class TestPublishing:
    @pytest.mark.asyncio
    async def test_publish_and_unpublish(self, service):
        await service.create(approval_flow(isActive=False))
        assert (await service.publish("def-joiner")).is_active
        assert not (await service.unpublish("def-joiner")).is_active

    @pytest.mark.asyncio
    async def test_set_as_default_clears_other_defaults(self, service, definitions):
        await service.create(approval_flow(id="def-old"))
        await service.create(approval_flow(id="def-new", workflowCode="JOINER_NEW", isDefault=False))

        await service.set_as_default("def-new")

        assert not (await definitions.get_by_id("def-old")).is_default
        assert (await definitions.get_by_id("def-new")).is_default
        assert (await definitions.get_default_for_type("Joiner")).id == "def-new"


# ─── Clone & versions ───

@pytest.mark.unit
class TestCloneAndVersions:
    @pytest.mark.asyncio
    async def test_clone(self, service):
        await service.create(approval_flow())
        copy = await service.clone("def-joiner", "Contractor Onboarding", "CONTRACTOR")

        assert copy.id != "def-joiner"
        assert copy.workflow_code == "CONTRACTOR"
        assert copy.version == 1
        assert not copy.is_active
        assert not copy.is_default
        assert [s.id for s in copy.steps] == ["start", "approve", "end"]

    @pytest.mark.asyncio
    async def test_clone_code_conflict(self, service):
        await service.create(approval_flow())
        with pytest.raises(ConflictError, match="JOINER"):
            await service.clone("def-joiner", "Copy", "JOINER")

    @pytest.mark.asyncio
    async def test_create_version(self, service, definitions):
        await service.create(approval_flow())
        v2 = await service.create_version("def-joiner")
        v3 = await service.create_version("def-joiner")

        assert (v2.version, v3.version) == (2, 3)
        assert v2.workflow_code == "JOINER"
        assert not v3.is_active
        # Inactive versions do not shadow the active one
        assert (await definitions.get_by_code("JOINER")).id == "def-joiner"


# ─── Selection ───

@pytest.mark.unit
class TestSelectForProcess:
    @pytest.mark.asyncio
    async def test_highest_priority_trigger_wins(self, service):
        await service.create(approval_flow())
        await service.create(approval_flow(id="def-fin", workflowCode="FIN", isDefault=False, triggerConditions=[trigger("Finance", 1)]))
        await service.create(approval_flow(id="def-fin2", workflowCode="FIN2", isDefault=False, triggerConditions=[trigger("Finance", 5)]))

        selected = await service.select_for_process("Joiner", {"department": "Finance"})
        assert selected.id == "def-fin2"

    @pytest.mark.asyncio
    async def test_falls_back_to_default(self, service):
        await service.create(approval_flow())
        await service.create(approval_flow(id="def-fin", workflowCode="FIN", isDefault=False, triggerConditions=[trigger("Finance", 1)]))

        assert (await service.select_for_process("Joiner", {"department": "Sales"})).id == "def-joiner"
        assert (await service.select_for_process("Joiner")).id == "def-joiner"

    @pytest.mark.asyncio
    async def test_inactive_definitions_never_selected(self, service):
        await service.create(approval_flow(id="def-fin", isActive=False, triggerConditions=[trigger("Finance", 1)]))
        assert await service.select_for_process("Joiner", {"department": "Finance"}) is None
