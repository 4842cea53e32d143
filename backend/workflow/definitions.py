"""
Definition lifecycle: create, update, publish, default selection, versioning.

Every path that can make a definition runnable (create active, publish,
replacing the steps) goes through ``validate_for_publish`` first.
"""

from typing import Any, Dict, Optional

import structlog

from core.exceptions import ConflictError, NotFoundError
from workflow.conditions import ConditionEvaluator
from workflow.interfaces import DefinitionRepository
from workflow.models import WorkflowDefinition, parse_steps
from workflow.validator import DefinitionValidator

logger = structlog.get_logger(__name__)


class DefinitionService:
    """Manages workflow definitions on top of a definition repository."""

    def __init__(
        self,
        repo: DefinitionRepository,
        validator: Optional[DefinitionValidator] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.repo = repo
        self.validator = validator or DefinitionValidator()
        self.evaluator = evaluator or ConditionEvaluator()

    async def get(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.repo.get_by_id(definition_id)
        if definition is None:
            raise NotFoundError(f"Workflow definition {definition_id} not found")
        return definition

    async def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store a new definition.

        Raises:
            DefinitionValidationError: definition has validation errors
        """
        self.validator.validate_for_publish(definition)
        created = await self.repo.create(definition.model_copy(update={"usage_count": 0}))
        logger.info(
            "Workflow definition created",
            definition_id=created.id,
            workflow_code=created.workflow_code,
            version=created.version,
        )
        return created

    async def update(self, definition_id: str, updates: Dict[str, Any]) -> WorkflowDefinition:
        """Apply field updates; replacing ``steps`` re-validates the merged definition."""
        if "steps" in updates:
            current = await self.get(definition_id)
            steps = updates["steps"]
            # Unparseable JSON is left for the validator to report
            if isinstance(steps, str):
                merged = current.model_dump()
                merged["steps"] = steps
                self.validator.validate_for_publish(merged)
                updates = {**updates, "steps": parse_steps(steps)}
            else:
                self.validator.validate_for_publish(current.model_copy(update={"steps": parse_steps(steps)}))

        updated = await self.repo.update(definition_id, updates)
        logger.info("Workflow definition updated", definition_id=definition_id, fields=sorted(updates))
        return updated

    async def publish(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.get(definition_id)
        self.validator.validate_for_publish(definition)
        published = await self.repo.update(definition_id, {"is_active": True})
        logger.info("Workflow definition published", definition_id=definition_id)
        return published

    async def unpublish(self, definition_id: str) -> WorkflowDefinition:
        await self.get(definition_id)
        return await self.repo.update(definition_id, {"is_active": False})

    async def set_as_default(self, definition_id: str) -> WorkflowDefinition:
        """Make this the default for its process type, clearing any other default."""
        definition = await self.get(definition_id)
        for other in await self.repo.list_by_type(definition.process_type, active_only=False):
            if other.id != definition.id and other.is_default:
                await self.repo.update(other.id, {"is_default": False})
        updated = await self.repo.update(definition_id, {"is_default": True})
        logger.info(
            "Default workflow set",
            definition_id=definition_id,
            process_type=definition.process_type,
        )
        return updated

    async def clone(self, definition_id: str, title: str, workflow_code: str) -> WorkflowDefinition:
        original = await self.get(definition_id)
        if await self.repo.get_by_code(workflow_code):
            raise ConflictError(f'Workflow code "{workflow_code}" is already in use')
        copy = original.model_copy(
            deep=True,
            update={
                "id": None,
                "title": title,
                "workflow_code": workflow_code,
                "version": 1,
                "is_active": False,
                "is_default": False,
                "usage_count": 0,
                "success_rate": None,
                "average_completion_hours": None,
            },
        )
        return await self.create(copy)

    async def create_version(self, definition_id: str) -> WorkflowDefinition:
        """Inactive copy under the same code with the next version number."""
        original = await self.get(definition_id)
        latest = max(
            (d.version for d in await self.repo.list_by_type(original.process_type, active_only=False)
             if d.workflow_code == original.workflow_code),
            default=original.version,
        )
        version = original.model_copy(
            deep=True,
            update={
                "id": None,
                "version": latest + 1,
                "is_active": False,
                "is_default": False,
                "usage_count": 0,
                "success_rate": None,
                "average_completion_hours": None,
            },
        )
        return await self.create(version)

    async def select_for_process(
        self, process_type: str, process_data: Optional[Dict[str, Any]] = None
    ) -> Optional[WorkflowDefinition]:
        """Pick the definition a new process of this type should run.

        Active definitions whose trigger conditions match ``process_data``
        win, highest trigger priority first; otherwise the type's default.
        """
        process_data = process_data or {}
        best: Optional[WorkflowDefinition] = None
        best_priority: Optional[int] = None

        for definition in await self.repo.list_by_type(process_type):
            for trigger in definition.trigger_conditions:
                if not trigger.conditions:
                    continue
                if not self.evaluator.evaluate_condition_groups(trigger.conditions, process_data):
                    continue
                if best_priority is None or trigger.priority > best_priority:
                    best, best_priority = definition, trigger.priority

        if best is not None:
            logger.debug(
                "Workflow selected by trigger conditions",
                process_type=process_type,
                definition_id=best.id,
                priority=best_priority,
            )
            return best
        return await self.repo.get_default_for_type(process_type)
