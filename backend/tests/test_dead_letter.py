"""Tests for the dead letter queue."""

import pytest

from workflow.dead_letter import DeadLetterQueue


@pytest.fixture
def dlq():
    return DeadLetterQueue()


def add(dlq, operation_type="process_status_sync", **payload):
    return dlq.add(operation_type=operation_type, payload=payload or {"process_id": "p1"}, error="boom", attempts=4)


@pytest.mark.unit
class TestDeadLetterQueue:
    def test_add_and_get(self, dlq):
        item = add(dlq)
        assert item.id.startswith("dlq_")
        assert dlq.get(item.id).error == "boom"
        assert len(dlq) == 1

    def test_returned_items_are_copies(self, dlq):
        item = add(dlq)
        item.payload["process_id"] = "changed"
        fetched = dlq.get(item.id)
        fetched.attempts = 99
        again = dlq.get(item.id)
        assert again.payload["process_id"] == "p1"
        assert again.attempts == 4

    def test_payload_is_copied_on_add(self, dlq):
        payload = {"process_id": "p1"}
        item = dlq.add("op", payload, "boom", 1)
        payload["process_id"] = "p2"
        assert dlq.get(item.id).payload == {"process_id": "p1"}

    def test_get_by_type(self, dlq):
        add(dlq, "process_status_sync")
        add(dlq, "other")
        assert [i.operation_type for i in dlq.get_by_type("other")] == ["other"]
        assert len(dlq.get_all()) == 2

    def test_remove(self, dlq):
        item = add(dlq)
        assert dlq.remove(item.id)
        assert not dlq.remove(item.id)
        assert dlq.get(item.id) is None

    def test_update_attempt(self, dlq):
        item = add(dlq)
        updated = dlq.update_attempt(item.id, "still failing")
        assert updated.attempts == 5
        assert updated.error == "still failing"
        assert dlq.update_attempt("missing") is None

    def test_max_items_drops_oldest(self):
        dlq = DeadLetterQueue(max_items=2)
        first = add(dlq)
        add(dlq)
        add(dlq)
        assert len(dlq) == 2
        assert dlq.get(first.id) is None

    def test_stats(self, dlq):
        add(dlq, "process_status_sync")
        add(dlq, "process_status_sync")
        add(dlq, "other")
        stats = dlq.get_stats()
        assert stats.total_items == 3
        assert stats.by_type == {"process_status_sync": 2, "other": 1}
        assert stats.oldest_item <= stats.newest_item
        assert stats.to_dict()["total_items"] == 3

    def test_empty_stats(self, dlq):
        stats = dlq.get_stats()
        assert stats.total_items == 0
        assert stats.oldest_item is None

    def test_clear(self, dlq):
        add(dlq)
        add(dlq)
        assert dlq.clear() == 2
        assert len(dlq) == 0
