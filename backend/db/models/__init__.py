"""Database models for the workflow core.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import WorkflowDefinitionModel
from db.models.instance import WorkflowInstanceModel, WorkflowLogModel, WorkflowStepStateModel

__all__ = [
    "WorkflowDefinitionModel",
    "WorkflowInstanceModel",
    "WorkflowStepStateModel",
    "WorkflowLogModel",
]
