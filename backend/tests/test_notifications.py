"""Tests for the workflow notification manager."""

import pytest
from structlog.testing import capture_logs

from conftest import RecordingSender
from notifications.manager import LoggingSender, NotificationManager, stakeholders
from workflow.state import WorkflowInstance

CONTEXT = {
    "employeeName": "Ann Lee",
    "employeeEmail": "ann@example.com",
    "managerId": "mgr-1",
    "managerEmail": "boss@example.com",
}


def onboarding(**context):
    return WorkflowInstance(
        definition_id="def-joiner",
        process_id="proc-1",
        id="inst-1",
        title="Joiner Onboarding - Ann Lee",
        context={**CONTEXT, **context},
    )


@pytest.mark.unit
class TestStakeholders:
    def test_manager_and_employee(self):
        assert stakeholders(CONTEXT) == ["mgr-1", "boss@example.com", "ann@example.com"]

    def test_without_employee(self):
        assert stakeholders(CONTEXT, include_employee=False) == ["mgr-1", "boss@example.com"]

    def test_blank_and_duplicate_values_dropped(self):
        assert stakeholders({"managerId": "", "managerEmail": "boss@example.com", "employeeEmail": "boss@example.com"}) == [
            "boss@example.com"
        ]


@pytest.mark.unit
class TestSend:
    @pytest.mark.asyncio
    async def test_delivered(self):
        sender = RecordingSender()
        outcome = await NotificationManager(sender).send("custom", ["a@example.com", 42, "a@example.com"], "Hi", "Body")

        assert outcome.delivered
        assert outcome.recipients == ["a@example.com", "42"]
        assert sender.sent[0]["data"] == {}

    @pytest.mark.asyncio
    async def test_no_recipients_skipped(self):
        sender = RecordingSender()
        outcome = await NotificationManager(sender).send("custom", [None, ""], "Hi", "Body")

        assert not outcome.attempted
        assert outcome.error == "No recipients"
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_delivery_failure_is_captured(self):
        outcome = await NotificationManager(RecordingSender(fail=True)).send("custom", ["a@example.com"], "Hi", "Body")
        assert outcome.attempted
        assert not outcome.delivered
        assert outcome.error == "smtp down"

    @pytest.mark.asyncio
    async def test_default_sender_logs_only(self):
        outcome = await NotificationManager().send("custom", ["a@example.com"], "Hi", "Body")
        assert outcome.delivered

    @pytest.mark.asyncio
    async def test_logging_sender(self):
        with capture_logs() as logs:
            await LoggingSender().send("custom", ["a@example.com"], "Hi", "Body")

        [entry] = logs
        assert entry["event"] == "Notification (no channel configured)"
        assert entry["notification_event"] == "custom"
        assert entry["recipients"] == ["a@example.com"]

    @pytest.mark.asyncio
    async def test_lifecycle_event_through_default_sender(self):
        outcome = await NotificationManager().workflow_started(onboarding())

        assert outcome.delivered
        assert outcome.error is None
        assert outcome.recipients == ["mgr-1", "boss@example.com", "ann@example.com"]


@pytest.mark.unit
class TestLifecycleEvents:
    @pytest.mark.asyncio
    async def test_started_includes_employee(self):
        sender = RecordingSender()
        await NotificationManager(sender).workflow_started(onboarding())

        [sent] = sender.sent
        assert sent["event"] == "workflow_started"
        assert sent["recipients"] == ["mgr-1", "boss@example.com", "ann@example.com"]
        assert sent["subject"] == "Workflow started: Joiner Onboarding - Ann Lee"
        assert sent["message"] == "Joiner Onboarding - Ann Lee has started for Ann Lee."

    @pytest.mark.asyncio
    async def test_completed(self):
        sender = RecordingSender()
        await NotificationManager(sender).workflow_completed(onboarding())
        assert sender.events() == ["workflow_completed"]
        assert sender.sent[0]["data"] == {"instance_id": "inst-1", "process_id": "proc-1"}

    @pytest.mark.asyncio
    async def test_failed_goes_to_manager_only(self):
        sender = RecordingSender()
        await NotificationManager(sender).workflow_failed(onboarding(), "directory offline")

        [sent] = sender.sent
        assert sent["recipients"] == ["mgr-1", "boss@example.com"]
        assert sent["message"] == "Joiner Onboarding - Ann Lee failed: directory offline"
        assert sent["data"]["error"] == "directory offline"

    @pytest.mark.asyncio
    async def test_sla_breach_adds_escalation_contacts(self):
        sender = RecordingSender()
        await NotificationManager(sender).sla_breached(onboarding(), "Wait for IT", 30, ["hr-lead@example.com", "mgr-1"])

        [sent] = sender.sent
        assert sent["recipients"] == ["mgr-1", "boss@example.com", "hr-lead@example.com"]
        assert sent["subject"] == "SLA breached: Wait for IT"
        assert sent["data"]["elapsed_hours"] == 30

    @pytest.mark.asyncio
    async def test_step_error(self):
        sender = RecordingSender()
        await NotificationManager(sender).step_error(onboarding(), "Provision", ["ops@example.com"], "timeout")
        [sent] = sender.sent
        assert sent["event"] == "step_error"
        assert sent["message"] == 'Step "Provision" of Joiner Onboarding - Ann Lee failed: timeout'

    @pytest.mark.asyncio
    async def test_started_without_employee_name(self):
        sender = RecordingSender()
        instance = onboarding()
        del instance.context["employeeName"]
        await NotificationManager(sender).workflow_started(instance)
        assert sender.sent[0]["message"].endswith("has started for the employee.")
