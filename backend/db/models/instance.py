"""Workflow instance, step state and audit log models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import InstanceStatus, LogLevel, StepStatus
from db.base import BaseModel, UTCDateTime


class WorkflowInstanceModel(BaseModel):
    """One execution of a definition for a business process.

    Attributes:
        definition_id: Foreign key to WorkflowDefinitionModel
        process_id: Owning process record in the host system
        parent_instance_id: Set for sub-workflow children
        status: InstanceStatus value
        context: Business fields (employee, manager, department ...)
        variables: Mutable workflow variables
    """

    __tablename__ = "workflow_instances"

    definition_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    process_id: Mapped[str] = mapped_column(nullable=False, index=True)
    parent_instance_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    title: Mapped[str] = mapped_column(nullable=False, default="")
    status: Mapped[str] = mapped_column(default=InstanceStatus.PENDING.value, index=True)
    current_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    current_step_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    total_steps: Mapped[int] = mapped_column(default=0)
    completed_steps: Mapped[int] = mapped_column(default=0)
    progress_percentage: Mapped[int] = mapped_column(default=0)
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    variables: Mapped[dict] = mapped_column(JSON, default=dict)
    started_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    estimated_completion_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    started_by_user_id: Mapped[Optional[str]] = mapped_column(nullable=True)

    # Relationships
    definition: Mapped["WorkflowDefinitionModel"] = relationship(
        "WorkflowDefinitionModel", back_populates="instances", lazy="raise"
    )
    step_states: Mapped[list["WorkflowStepStateModel"]] = relationship(
        "WorkflowStepStateModel",
        back_populates="instance",
        cascade="all, delete-orphan",
        lazy="raise",
    )
    logs: Mapped[list["WorkflowLogModel"]] = relationship(
        "WorkflowLogModel",
        back_populates="instance",
        cascade="all, delete-orphan",
        lazy="raise",
    )


class WorkflowStepStateModel(BaseModel):
    """Status of one step within one instance."""

    __tablename__ = "workflow_step_states"
    __table_args__ = (UniqueConstraint("instance_id", "step_id", name="uq_step_state_instance_step"),)

    instance_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id: Mapped[str] = mapped_column(nullable=False)
    step_name: Mapped[str] = mapped_column(default="")
    step_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    order: Mapped[int] = mapped_column("step_order", default=0)
    status: Mapped[str] = mapped_column(default=StepStatus.PENDING.value, index=True)
    retry_count: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True, index=True)
    result: Mapped[dict] = mapped_column(JSON, default=dict)
    output_variables: Mapped[dict] = mapped_column(JSON, default=dict)
    task_assignment_ids: Mapped[list] = mapped_column(JSON, default=list)
    approval_ids: Mapped[list] = mapped_column(JSON, default=list)

    # Relationships
    instance: Mapped["WorkflowInstanceModel"] = relationship(
        "WorkflowInstanceModel", back_populates="step_states", lazy="raise"
    )


class WorkflowLogModel(BaseModel):
    """Audit log entry of an instance."""

    __tablename__ = "workflow_logs"

    instance_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event: Mapped[str] = mapped_column(nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[str] = mapped_column(default=LogLevel.INFO.value, index=True)
    step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    step_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)

    # Relationships
    instance: Mapped["WorkflowInstanceModel"] = relationship(
        "WorkflowInstanceModel", back_populates="logs", lazy="raise"
    )
