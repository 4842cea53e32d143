"""
Dead letter queue for operations that exhausted their retries.

Entries are owned by the queue: callers read and remove them, and record
manual re-attempts through ``update_attempt``, but never edit counters
directly. The queue is an ordinary object handed to whoever needs it
(engine, status sync, worker tasks); there is no process-wide instance.
"""

import copy
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _new_item_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"dlq_{int(time.time() * 1000)}_{suffix}"


@dataclass
class DeadLetterItem:
    """An operation whose every attempt failed."""

    operation_type: str
    payload: Dict[str, Any]
    error: str
    attempts: int
    id: str = field(default_factory=_new_item_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_attempt_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation_type": self.operation_type,
            "payload": self.payload,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "last_attempt_at": self.last_attempt_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class DLQStats:
    total_items: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    oldest_item: Optional[datetime] = None
    newest_item: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_items": self.total_items,
            "by_type": dict(self.by_type),
            "oldest_item": self.oldest_item.isoformat() if self.oldest_item else None,
            "newest_item": self.newest_item.isoformat() if self.newest_item else None,
        }


class DeadLetterQueue:
    """In-memory dead letter store, insertion ordered."""

    def __init__(self, max_items: Optional[int] = None):
        self._items: Dict[str, DeadLetterItem] = {}
        self.max_items = max_items

    def __len__(self) -> int:
        return len(self._items)

    def add(
        self,
        operation_type: str,
        payload: Dict[str, Any],
        error: str,
        attempts: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DeadLetterItem:
        item = DeadLetterItem(
            operation_type=operation_type,
            payload=copy.deepcopy(payload),
            error=error,
            attempts=attempts,
            metadata=dict(metadata or {}),
        )
        self._items[item.id] = item

        if self.max_items is not None and len(self._items) > self.max_items:
            oldest_id = next(iter(self._items))
            dropped = self._items.pop(oldest_id)
            logger.warning(
                "Dead letter queue full, dropped oldest item",
                item_id=dropped.id,
                operation_type=dropped.operation_type,
            )

        logger.warning(
            "Operation moved to dead letter queue",
            item_id=item.id,
            operation_type=operation_type,
            attempts=attempts,
            error=error,
        )
        return copy.deepcopy(item)

    def get_all(self) -> List[DeadLetterItem]:
        return [copy.deepcopy(item) for item in self._items.values()]

    def get_by_type(self, operation_type: str) -> List[DeadLetterItem]:
        return [copy.deepcopy(i) for i in self._items.values() if i.operation_type == operation_type]

    def get(self, item_id: str) -> Optional[DeadLetterItem]:
        item = self._items.get(item_id)
        return copy.deepcopy(item) if item else None

    def remove(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def update_attempt(self, item_id: str, error: Optional[str] = None) -> Optional[DeadLetterItem]:
        """Record one more (failed or in-flight) attempt on an entry."""
        item = self._items.get(item_id)
        if item is None:
            return None
        item.attempts += 1
        item.last_attempt_at = datetime.now(timezone.utc)
        if error:
            item.error = error
        return copy.deepcopy(item)

    def get_stats(self) -> DLQStats:
        stats = DLQStats(total_items=len(self._items))
        for item in self._items.values():
            stats.by_type[item.operation_type] = stats.by_type.get(item.operation_type, 0) + 1
            if stats.oldest_item is None or item.created_at < stats.oldest_item:
                stats.oldest_item = item.created_at
            if stats.newest_item is None or item.created_at > stats.newest_item:
                stats.newest_item = item.created_at
        return stats

    def clear(self) -> int:
        count = len(self._items)
        self._items.clear()
        if count:
            logger.info("Dead letter queue cleared", items=count)
        return count
