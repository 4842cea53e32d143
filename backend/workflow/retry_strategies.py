"""Retry strategies and the retry-with-dead-letter wrapper.

Two users:
- Process status sync: ``retry_with_dlq`` retries in-process with
  exponential backoff and parks the operation in the dead letter queue
  once every attempt failed.
- Per-step error policies: ``RetryStrategy.from_error_config`` computes the
  delay before a failed step is re-run (the engine schedules it rather
  than sleeping).

Usage:
    result = await retry_with_dlq(
        lambda: sync(process_id, status, instance_id),
        PROCESS_STATUS_SYNC,
        {"process_id": process_id, "status": status.value},
        PROCESS_SYNC_RETRY,
        dlq,
    )
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from workflow.dead_letter import DeadLetterQueue

logger = structlog.get_logger(__name__)

MINUTE_MS = 60_000


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    NONE = "none"


@dataclass
class RetryContext:
    """Where a retried operation stands."""
    attempt_number: int = 0
    max_attempts: int = 0
    last_error: str = ""
    total_delay_ms: float = 0.0


@dataclass
class RetryStrategy:
    """Backoff schedule. Delays are in milliseconds."""
    policy: RetryPolicy = RetryPolicy.EXPONENTIAL
    max_retries: int = 3
    initial_delay_ms: float = 1000.0
    max_delay_ms: float = 10000.0
    backoff_multiplier: float = 2.0

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries: one attempt only."""
        return cls(policy=RetryPolicy.NONE, max_retries=0, initial_delay_ms=0, max_delay_ms=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay_ms: float = 1000.0) -> 'RetryStrategy':
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            initial_delay_ms=delay_ms,
            max_delay_ms=delay_ms,
            backoff_multiplier=1.0,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        initial_delay_ms: float = 1000.0,
        max_delay_ms: float = 10000.0,
        backoff_multiplier: float = 2.0,
    ) -> 'RetryStrategy':
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            initial_delay_ms=initial_delay_ms,
            max_delay_ms=max_delay_ms,
            backoff_multiplier=backoff_multiplier,
        )

    @classmethod
    def from_error_config(cls, error_config, max_delay_minutes: float = 60.0) -> 'RetryStrategy':
        """Strategy for a step's ``errorConfig`` (minutes in, milliseconds out)."""
        return cls.exponential(
            max_retries=error_config.retry_count,
            initial_delay_ms=error_config.retry_delay_minutes * MINUTE_MS,
            max_delay_ms=max_delay_minutes * MINUTE_MS,
            backoff_multiplier=error_config.retry_backoff_multiplier,
        )

    @classmethod
    def from_dict(cls, config: dict) -> 'RetryStrategy':
        """Accepts both snake_case and the camelCase option names used by callers."""
        return cls(
            policy=RetryPolicy(config.get('policy', 'exponential')),
            max_retries=config.get('max_retries', config.get('maxRetries', 3)),
            initial_delay_ms=config.get('initial_delay_ms', config.get('initialDelayMs', 1000.0)),
            max_delay_ms=config.get('max_delay_ms', config.get('maxDelayMs', 10000.0)),
            backoff_multiplier=config.get('backoff_multiplier', config.get('backoffMultiplier', 2.0)),
        )

    def to_dict(self) -> dict:
        return {
            'policy': self.policy.value,
            'max_retries': self.max_retries,
            'initial_delay_ms': self.initial_delay_ms,
            'max_delay_ms': self.max_delay_ms,
            'backoff_multiplier': self.backoff_multiplier,
        }

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based), in milliseconds."""
        if self.policy == RetryPolicy.NONE:
            return 0.0
        if self.policy == RetryPolicy.FIXED:
            return float(min(self.initial_delay_ms, self.max_delay_ms))
        delay = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return float(min(delay, self.max_delay_ms))

    def should_retry(self, attempt: int) -> bool:
        """True while ``attempt`` failed attempts still leave retries."""
        return self.policy != RetryPolicy.NONE and attempt <= self.max_retries

    def delays(self) -> List[float]:
        """Every delay the strategy would wait, in order."""
        return [self.compute_delay(i) for i in range(1, self.max_retries + 1)]

    def total_delay_ms(self) -> float:
        return sum(self.delays())


# ─── Presets ───

PROCESS_SYNC_RETRY = RetryStrategy.exponential(
    max_retries=3, initial_delay_ms=1000, max_delay_ms=10000, backoff_multiplier=2
)

RETRY_PRESETS: dict[str, RetryStrategy] = {
    'none': RetryStrategy.none(),
    'process_sync': PROCESS_SYNC_RETRY,
    'single_retry': RetryStrategy.exponential(max_retries=1, initial_delay_ms=500, max_delay_ms=500),
}


@dataclass
class RetryResult:
    success: bool
    attempts: int
    total_duration_ms: float
    data: Any = None
    error: Optional[str] = None
    dead_letter_item_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "attempts": self.attempts,
            "total_duration_ms": round(self.total_duration_ms, 2),
            "dead_letter_item_id": self.dead_letter_item_id,
        }


async def retry_with_dlq(
    operation: Callable[[], Awaitable[Any]],
    operation_type: str,
    payload: Dict[str, Any],
    strategy: RetryStrategy,
    dlq: Optional[DeadLetterQueue] = None,
    metadata: Optional[Dict[str, Any]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryResult:
    """Run ``operation`` up to ``max_retries + 1`` times.

    Never raises for operation failures: the outcome, including the dead
    letter item id on exhaustion, is returned as a ``RetryResult``.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        operation_type: Tag stored on the dead letter item.
        payload: Data needed to replay the operation later.
        strategy: Backoff schedule.
        dlq: Queue receiving the item when every attempt fails; None drops it.
        metadata: Extra context stored on the dead letter item.
        sleep: Awaitable taking seconds (injected by tests).
    """
    started = time.monotonic()
    context = RetryContext(max_attempts=strategy.max_attempts)

    for attempt in range(1, strategy.max_attempts + 1):
        context.attempt_number = attempt
        try:
            data = await operation()
            if attempt > 1:
                logger.info("Operation succeeded after retry", operation_type=operation_type, attempt=attempt)
            return RetryResult(
                success=True,
                data=data,
                attempts=attempt,
                total_duration_ms=(time.monotonic() - started) * 1000,
            )
        except Exception as e:
            context.last_error = str(e) or type(e).__name__
            logger.warning(
                "Operation attempt failed",
                operation_type=operation_type,
                attempt=attempt,
                max_attempts=strategy.max_attempts,
                error=context.last_error,
            )

        if strategy.should_retry(attempt):
            delay_ms = strategy.compute_delay(attempt)
            context.total_delay_ms += delay_ms
            await sleep(delay_ms / 1000)

    item_id = None
    if dlq is not None:
        item = dlq.add(
            operation_type=operation_type,
            payload=payload,
            error=context.last_error,
            attempts=context.attempt_number,
            metadata=metadata,
        )
        item_id = item.id

    return RetryResult(
        success=False,
        error=context.last_error,
        attempts=context.attempt_number,
        total_duration_ms=(time.monotonic() - started) * 1000,
        dead_letter_item_id=item_id,
    )
