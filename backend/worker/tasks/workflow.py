"""Celery tasks for workflow execution.

These tasks bridge the Celery worker with the WorkflowEngine: starting
workflows, feeding task and approval completions back in, the periodic
resume poll and the status sync dead-letter sweep.

Each task runs its coroutine on a fresh event loop with a short-lived
database engine (``worker_session_factory``), so pooled connections never
cross loops.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import get_settings
from db.repositories import SqlDefinitionRepository, SqlInstanceRepository
from db.worker_session import worker_session_factory
from integrations.http_transport import HttpxTransport, ProcessStatusWebhook
from workflow.engine import StartWorkflowOptions, WorkflowEngine
from workflow.resume import ResumeService
from workflow.retry_strategies import RetryStrategy
from workflow.status_sync import ProcessStatusSync
from worker.celery_app import celery_app

logger = structlog.get_logger(__name__)

# Per worker process; the DLQ sweep replays what this process parked.
_status_sync: Optional[ProcessStatusSync] = None


def get_status_sync() -> ProcessStatusSync:
    global _status_sync
    if _status_sync is None:
        settings = get_settings()
        callback = None
        if settings.PROCESS_STATUS_CALLBACK_URL:
            callback = ProcessStatusWebhook(settings.PROCESS_STATUS_CALLBACK_URL)
        _status_sync = ProcessStatusSync(
            callback=callback,
            strategy=RetryStrategy.exponential(
                max_retries=settings.SYNC_MAX_RETRIES,
                initial_delay_ms=settings.SYNC_INITIAL_DELAY_MS,
                max_delay_ms=settings.SYNC_MAX_DELAY_MS,
                backoff_multiplier=settings.SYNC_BACKOFF_MULTIPLIER,
            ),
        )
    return _status_sync


def build_engine(session_factory: async_sessionmaker) -> WorkflowEngine:
    settings = get_settings()
    return WorkflowEngine(
        definitions=SqlDefinitionRepository(session_factory),
        instances=SqlInstanceRepository(session_factory),
        status_sync=get_status_sync(),
        transport=HttpxTransport(block_private_hosts=settings.WEBHOOK_BLOCK_PRIVATE_HOSTS),
        settings=settings,
    )


def _run(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ─── Execution ───────────────────────────────────────────────────


async def _start_workflow(options: Dict[str, Any]) -> Dict[str, Any]:
    async with worker_session_factory() as session_factory:
        engine = build_engine(session_factory)
        result = await engine.start_workflow(StartWorkflowOptions(**options))
        return result.to_dict()


@celery_app.task(
    name="worker.tasks.workflow.start_workflow",
    acks_late=True,
    queue="workflows",
)
def start_workflow(options: Dict[str, Any]) -> Dict[str, Any]:
    """Start a workflow for a process.

    Args:
        options: StartWorkflowOptions fields (process_id, process_type,
            workflow_code or definition_id, employee and manager details ...)
    """
    logger.info("Starting workflow", process_id=options.get("process_id"))
    return _run(_start_workflow(options))


async def _task_completed(
    instance_id: str, step_id: str, task_id: str, completion_data: Optional[Dict[str, Any]]
) -> Optional[Dict[str, Any]]:
    async with worker_session_factory() as session_factory:
        engine = build_engine(session_factory)
        resume = ResumeService(engine, engine.instances, engine.definitions)
        result = await resume.on_task_completed(instance_id, step_id, task_id, completion_data)
        return result.to_dict() if result else None


@celery_app.task(name="worker.tasks.workflow.task_completed", queue="workflows")
def task_completed(
    instance_id: str,
    step_id: str,
    task_id: str,
    completion_data: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """A task created by a workflow step was completed in the host system."""
    return _run(_task_completed(instance_id, step_id, task_id, completion_data))


async def _approval_completed(
    instance_id: str,
    step_id: str,
    approval_id: str,
    approved: bool,
    comments: Optional[str],
    approver_user_id: Optional[str],
) -> Optional[Dict[str, Any]]:
    async with worker_session_factory() as session_factory:
        engine = build_engine(session_factory)
        resume = ResumeService(engine, engine.instances, engine.definitions)
        result = await resume.on_approval_completed(
            instance_id, step_id, approval_id, approved, comments, approver_user_id
        )
        return result.to_dict() if result else None


@celery_app.task(name="worker.tasks.workflow.approval_completed", queue="workflows")
def approval_completed(
    instance_id: str,
    step_id: str,
    approval_id: str,
    approved: bool,
    comments: Optional[str] = None,
    approver_user_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    return _run(
        _approval_completed(instance_id, step_id, approval_id, approved, comments, approver_user_id)
    )


# ─── Periodic ────────────────────────────────────────────────────


async def _poll_waiting_workflows() -> Dict[str, Any]:
    settings = get_settings()
    async with worker_session_factory() as session_factory:
        engine = build_engine(session_factory)
        resume = ResumeService(
            engine, engine.instances, engine.definitions, batch_size=settings.RESUME_POLL_BATCH_SIZE
        )
        result = await resume.poll_and_resume()
        return result.to_dict()


@celery_app.task(name="worker.tasks.workflow.poll_waiting_workflows", queue="workflows")
def poll_waiting_workflows() -> Dict[str, Any]:
    """Re-check waiting instances (beat: every RESUME_POLL_INTERVAL_MINUTES)."""
    return _run(_poll_waiting_workflows())


@celery_app.task(name="worker.tasks.workflow.retry_failed_syncs", queue="workflows")
def retry_failed_syncs() -> Dict[str, int]:
    """Replay process status updates parked in this worker's dead letter queue."""
    status_sync = get_status_sync()
    if not status_sync.get_failed_operations():
        return {"succeeded": 0, "failed": 0}
    result = _run(status_sync.retry_all_failed())
    logger.info("Status sync DLQ sweep finished", **result)
    return result
