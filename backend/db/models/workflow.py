"""Workflow definition model."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class WorkflowDefinitionModel(BaseModel):
    """A versioned workflow definition for one process type.

    Attributes:
        id: Unique identifier (UUID string)
        title: Display title
        workflow_code: Stable code used to look the definition up (JOINER_STANDARD ...)
        process_type: Joiner, Mover, Leaver ...
        version: Definition version number
        is_active: Whether new instances may start from it
        is_default: Default definition for its process type
        steps: Step list as camelCase JSON
        variables: Variable declarations as JSON
        trigger_conditions: Trigger condition groups as JSON
        usage_count / success_rate / average_completion_hours: statistics
    """

    __tablename__ = "workflow_definitions"

    title: Mapped[str] = mapped_column(nullable=False)
    workflow_code: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
    process_type: Mapped[str] = mapped_column(nullable=False, default="", index=True)
    version: Mapped[int] = mapped_column(default=1)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    is_default: Mapped[bool] = mapped_column(default=False)
    steps: Mapped[list] = mapped_column(JSON, default=list)
    variables: Mapped[list] = mapped_column(JSON, default=list)
    trigger_conditions: Mapped[list] = mapped_column(JSON, default=list)
    estimated_duration_hours: Mapped[Optional[float]] = mapped_column(nullable=True)

    usage_count: Mapped[int] = mapped_column(default=0)
    success_rate: Mapped[Optional[float]] = mapped_column(nullable=True)
    average_completion_hours: Mapped[Optional[float]] = mapped_column(nullable=True)

    # Relationships
    instances: Mapped[list["WorkflowInstanceModel"]] = relationship(
        "WorkflowInstanceModel",
        back_populates="definition",
        cascade="all, delete-orphan",
        lazy="raise",
    )
