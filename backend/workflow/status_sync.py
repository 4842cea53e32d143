"""Process status sync with retry and dead-letter fallback.

Every instance status transition is pushed to the owning process record
through an external callback. Failures never block the workflow: they are
retried with backoff and, once exhausted, parked in the dead letter queue
for individual or bulk replay.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from core.constants import PROCESS_STATUS_SYNC, InstanceStatus
from workflow.dead_letter import DeadLetterItem, DeadLetterQueue, DLQStats
from workflow.retry_strategies import PROCESS_SYNC_RETRY, RetryResult, RetryStrategy, retry_with_dlq

logger = structlog.get_logger(__name__)

SyncCallback = Callable[[str, InstanceStatus, str], Awaitable[Any]]


class ProcessStatusSync:
    """Wraps the status sync callback with ``retry_with_dlq``."""

    def __init__(
        self,
        callback: Optional[SyncCallback] = None,
        dlq: Optional[DeadLetterQueue] = None,
        strategy: RetryStrategy = PROCESS_SYNC_RETRY,
        replay_strategy: Optional[RetryStrategy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.callback = callback
        self.dlq = dlq if dlq is not None else DeadLetterQueue()
        self.strategy = strategy
        self.replay_strategy = replay_strategy or RetryStrategy.exponential(
            max_retries=1,
            initial_delay_ms=strategy.initial_delay_ms,
            max_delay_ms=strategy.max_delay_ms,
            backoff_multiplier=strategy.backoff_multiplier,
        )
        self._sleep_kwargs = {"sleep": sleep} if sleep is not None else {}

    async def sync(self, process_id: str, status: InstanceStatus, instance_id: str) -> RetryResult:
        if self.callback is None or not process_id:
            return RetryResult(success=True, attempts=0, total_duration_ms=0.0)

        payload = {"process_id": process_id, "status": status.value, "instance_id": instance_id}
        result = await retry_with_dlq(
            lambda: self.callback(process_id, status, instance_id),
            PROCESS_STATUS_SYNC,
            payload,
            self.strategy,
            self.dlq,
            metadata={"instance_id": instance_id},
            **self._sleep_kwargs,
        )
        if not result.success:
            logger.error(
                "Process status sync failed, queued for retry",
                process_id=process_id,
                instance_id=instance_id,
                status=status.value,
                dead_letter_item_id=result.dead_letter_item_id,
                error=result.error,
            )
        return result

    # ─── Dead letter management ───

    def get_failure_stats(self) -> DLQStats:
        return self.dlq.get_stats()

    def get_failed_operations(self) -> List[DeadLetterItem]:
        return self.dlq.get_by_type(PROCESS_STATUS_SYNC)

    async def retry_failed(self, item_id: str) -> bool:
        """Replay one queued sync. The entry is removed only on success."""
        item = self.dlq.get(item_id)
        if item is None or item.operation_type != PROCESS_STATUS_SYNC:
            logger.warning("Dead letter item not found", item_id=item_id)
            return False
        if self.callback is None:
            return False

        payload = item.payload
        status = InstanceStatus(payload["status"])
        result = await retry_with_dlq(
            lambda: self.callback(payload["process_id"], status, payload["instance_id"]),
            PROCESS_STATUS_SYNC,
            payload,
            self.replay_strategy,
            dlq=None,
            **self._sleep_kwargs,
        )
        if result.success:
            self.dlq.remove(item_id)
            logger.info("Queued status sync replayed", item_id=item_id, process_id=payload["process_id"])
            return True

        self.dlq.update_attempt(item_id, result.error)
        return False

    async def retry_all_failed(self) -> Dict[str, int]:
        succeeded = failed = 0
        for item in self.get_failed_operations():
            if await self.retry_failed(item.id):
                succeeded += 1
            else:
                failed += 1
        return {"succeeded": succeeded, "failed": failed}

    def clear_failures(self) -> int:
        removed = 0
        for item in self.get_failed_operations():
            removed += int(self.dlq.remove(item.id))
        return removed
