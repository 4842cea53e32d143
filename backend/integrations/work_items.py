"""In-process work item gateway.

The host system owns the real task and approval lists; this gateway keeps
them in memory so the core can run embedded or under test. Completion is
reported back to the workflow through ``workflow.resume.ResumeService``.
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from workflow.models import Step
from workflow.state import WorkflowInstance, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class WorkItem:
    id: str
    kind: str  # "task" | "approval"
    instance_id: str
    step_id: str
    title: str
    assignee: Optional[str] = None
    due_date: Optional[datetime] = None
    status: str = "Pending"
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class InMemoryWorkItemGateway:
    """Creates tasks and approvals as ``WorkItem`` records."""

    def __init__(self, templates: Optional[Dict[str, List[str]]] = None):
        self._items: Dict[str, WorkItem] = {}
        self._ids = itertools.count(1)
        self.templates = {str(k): list(v) for k, v in (templates or {}).items()}

    async def create_tasks(
        self, instance: WorkflowInstance, step: Step, request: Dict[str, Any]
    ) -> List[str]:
        """One task per template entry, or a single task when no template is given."""
        template_id = request.get("template_id")
        if template_id is not None:
            titles = self.templates.get(str(template_id), [])
        else:
            titles = [request.get("title") or step.name]

        ids = []
        for title in titles:
            item = self._add("task", instance, step, {**request, "title": title}, request.get("assignee"))
            ids.append(item.id)
        logger.info("Tasks created", instance_id=instance.id, step_id=step.id, task_ids=ids)
        return ids

    async def create_approval(
        self, instance: WorkflowInstance, step: Step, request: Dict[str, Any]
    ) -> str:
        item = self._add("approval", instance, step, request, request.get("approver"))
        logger.info("Approval created", instance_id=instance.id, step_id=step.id, approval_id=item.id)
        return item.id

    def _add(self, kind: str, instance: WorkflowInstance, step: Step, request: Dict[str, Any], assignee) -> WorkItem:
        item = WorkItem(
            id=f"{kind}-{next(self._ids)}",
            kind=kind,
            instance_id=instance.id,
            step_id=step.id,
            title=request.get("title") or step.name,
            assignee=None if assignee is None else str(assignee),
            due_date=request.get("due_date"),
            data=dict(request),
        )
        self._items[item.id] = item
        return item

    # ─── Queries used by hosts and tests ───

    def get(self, item_id: str) -> Optional[WorkItem]:
        return self._items.get(item_id)

    def list_for_instance(self, instance_id: str, kind: Optional[str] = None) -> List[WorkItem]:
        return [
            item for item in self._items.values()
            if item.instance_id == instance_id and (kind is None or item.kind == kind)
        ]

    def mark_completed(self, item_id: str, status: str = "Completed") -> WorkItem:
        item = self._items[item_id]
        item.status = status
        return item
