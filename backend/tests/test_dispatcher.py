"""Tests for the action dispatcher (task, approval, notification, variable and timer steps)."""

from datetime import timedelta

import pytest

from conftest import RecordingSender, make_step
from core.constants import NextAction, WaitItemType
from notifications.manager import NotificationManager
from workflow.dispatcher import ActionDispatcher
from workflow.models import Step
from workflow.results import ActionContext, ActionResult
from workflow.state import StepState, WorkflowInstance

PROCESS = {
    "id": "proc-7",
    "employeeName": "Ann Lee",
    "employeeEmail": "ann@example.com",
    "managerId": "mgr-1",
    "managerEmail": "boss@example.com",
    "department": "Finance",
}


@pytest.fixture
def dispatcher(work_items, notifier, clock):
    return ActionDispatcher(work_items=work_items, notifier=notifier, clock=clock)


@pytest.fixture
def instance():
    return WorkflowInstance(definition_id="def-1", process_id="proc-7", id="inst-1", context=dict(PROCESS))


def context_for(instance, step_dict, variables=None, step_state=None):
    return ActionContext(
        instance=instance,
        step=Step.model_validate(step_dict),
        step_state=step_state,
        process=dict(PROCESS),
        variables=dict(variables or {}),
    )


# ─── Tasks & approvals ───

@pytest.mark.unit
class TestTasksAndApprovals:
    @pytest.mark.asyncio
    async def test_create_task_waits_on_the_task(self, dispatcher, instance, work_items, clock):
        step = make_step("t1", "CreateTask", 2, config={
            "taskTitle": "Set up desk for {{employeeName}}", "assigneeRole": "manager", "dueDaysFromNow": 3,
        })
        result = await dispatcher.dispatch(context_for(instance, step))

        assert result.is_wait
        assert result.wait_for_item_type == WaitItemType.TASK
        [task_id] = result.task_ids
        item = work_items.get(task_id)
        assert item.title == "Set up desk for Ann Lee"
        assert item.assignee == "mgr-1"
        assert item.due_date == clock() + timedelta(days=3)
        assert result.output_variables["createdTaskId"] == task_id

    @pytest.mark.asyncio
    async def test_create_task_needs_assignee(self, dispatcher, instance):
        result = await dispatcher.dispatch(context_for(instance, make_step("t1", "CreateTask", 2)))
        assert not result.success
        assert result.error == "Task assignee not specified"

    @pytest.mark.asyncio
    async def test_assignee_field_is_resolved(self, dispatcher, instance, work_items):
        step = make_step("t1", "CreateTask", 2, config={"assigneeField": "variables.buddy"})
        result = await dispatcher.dispatch(context_for(instance, step, {"buddy": "user-9"}))
        assert work_items.get(result.task_ids[0]).assignee == "user-9"

    @pytest.mark.asyncio
    async def test_assign_tasks_from_template(self, dispatcher, instance, work_items):
        step = make_step("a1", "AssignTasks", 2, config={"taskTemplateId": 101, "assigneeRole": "it"})
        result = await dispatcher.dispatch(context_for(instance, step))

        assert result.is_wait
        assert len(result.task_ids) == 2
        titles = [work_items.get(t).title for t in result.task_ids]
        assert titles == ["Create AD account", "Order laptop"]

    @pytest.mark.asyncio
    async def test_assign_tasks_without_template_continues(self, dispatcher, instance):
        step = make_step("a1", "AssignTasks", 2, config={"assigneeRole": "manager"})
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.success
        assert result.next_action == NextAction.CONTINUE
        assert result.output_variables["tasksCreated"] == 1

    @pytest.mark.asyncio
    async def test_empty_template_fails_unless_allowed(self, dispatcher, instance):
        step = make_step("a1", "AssignTasks", 2, config={"taskTemplateId": 999, "assigneeRole": "it"})
        result = await dispatcher.dispatch(context_for(instance, step))
        assert not result.success
        assert "has no tasks configured" in result.error

        step["config"]["allowEmptyTemplate"] = True
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.success
        assert result.output_variables == {"tasksCreated": 0, "templateEmpty": True}

    @pytest.mark.asyncio
    async def test_assign_tasks_with_nothing_to_create_is_skipped(self, dispatcher, instance):
        result = await dispatcher.dispatch(context_for(instance, make_step("a1", "AssignTasks", 2)))
        assert result.success
        assert result.output_variables["skipped"] is True

    @pytest.mark.asyncio
    async def test_approval_waits(self, dispatcher, instance, work_items):
        step = make_step("ap", "Approval", 2, config={"approverEmail": "cfo@example.com", "dueDaysFromNow": 2})
        result = await dispatcher.dispatch(context_for(instance, step))

        assert result.wait_for_item_type == WaitItemType.APPROVAL
        [approval_id] = result.approval_ids
        assert work_items.get(approval_id).assignee == "cfo@example.com"
        assert result.output_variables == {"approvalId": approval_id, "approverId": "cfo@example.com"}

    @pytest.mark.asyncio
    async def test_no_gateway(self, notifier, instance):
        dispatcher = ActionDispatcher(notifier=notifier)
        step = make_step("ap", "Approval", 2, config={"approverRole": "manager"})
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.error == "No work item gateway configured"


# ─── Notifications ───

@pytest.mark.unit
class TestNotification:
    @pytest.mark.asyncio
    async def test_sends_to_all_recipients(self, dispatcher, instance, sender):
        step = make_step("n1", "Notification", 2, config={
            "recipientEmails": ["it@example.com"],
            "recipientRole": "manager",
            "notificationSubject": "Welcome {{employeeName}}",
            "messageTemplate": "{{employeeName}} joins {{department}}",
        })
        result = await dispatcher.dispatch(context_for(instance, step))

        assert result.success
        [sent] = sender.sent
        assert sent["recipients"] == ["it@example.com", "mgr-1"]
        assert sent["subject"] == "Welcome Ann Lee"
        assert sent["message"] == "Ann Lee joins Finance"

    @pytest.mark.asyncio
    async def test_no_recipients(self, dispatcher, instance):
        step = make_step("n1", "Notification", 2, config={"recipientField": "variables.nobody"})
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.error == "No notification recipients specified"

    @pytest.mark.asyncio
    async def test_delivery_failure_fails_the_step(self, work_items, instance):
        dispatcher = ActionDispatcher(work_items=work_items, notifier=NotificationManager(RecordingSender(fail=True)))
        step = make_step("n1", "Notification", 2, config={"recipientEmails": ["it@example.com"]})
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.error == "Notification failed: smtp down"


# ─── Variables & timers ───

@pytest.mark.unit
class TestVariablesAndTimers:
    @pytest.mark.asyncio
    async def test_set_literal_value(self, dispatcher, instance):
        step = make_step("v", "SetVariable", 2, config={"variableName": "laptop", "variableValue": {"model": "X1"}})
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.output_variables == {"laptop": {"model": "X1"}}

    @pytest.mark.asyncio
    async def test_set_from_template_and_expression(self, dispatcher, instance):
        templated = make_step("v", "SetVariable", 2, config={"variableName": "greeting", "variableValue": "Hi {{employeeName}}"})
        assert (await dispatcher.dispatch(context_for(instance, templated))).output_variables == {"greeting": "Hi Ann Lee"}

        expression = make_step("v", "SetVariable", 2, config={"variableName": "dept", "variableExpression": "process.department"})
        assert (await dispatcher.dispatch(context_for(instance, expression))).output_variables == {"dept": "Finance"}

    @pytest.mark.asyncio
    async def test_wait_hours_from_step_start(self, dispatcher, instance, clock):
        state = StepState(instance_id="inst-1", step_id="w", started_date=clock())
        step = make_step("w", "Wait", 2, config={"waitHours": 4})

        result = await dispatcher.dispatch(context_for(instance, step, step_state=state))
        assert result.wait_for_item_type == WaitItemType.TIME
        assert result.output_variables["waitUntil"] == (clock() + timedelta(hours=4)).isoformat()

        clock.advance(hours=4)
        result = await dispatcher.dispatch(context_for(instance, step, step_state=state))
        assert result.success and not result.is_wait
        assert result.output_variables == {"waitCompleted": True}

    @pytest.mark.asyncio
    async def test_wait_until_past_date_continues(self, dispatcher, instance):
        step = make_step("w", "Wait", 2, config={"waitUntilField": "variables.startDate"})
        result = await dispatcher.dispatch(context_for(instance, step, {"startDate": "2020-01-01"}))
        assert result.success and not result.is_wait


# ─── Generic Action step ───

@pytest.mark.unit
class TestActionStep:
    @pytest.mark.asyncio
    async def test_builtin_action_type(self, dispatcher, instance):
        step = make_step("x", "Action", 2, config={
            "actionType": "SetVariable", "actionConfig": {"variableName": "flag", "variableValue": True},
        })
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.output_variables == {"flag": True}

    @pytest.mark.asyncio
    async def test_custom_handler(self, dispatcher, instance):
        seen = {}

        async def provision_laptop(config, context):
            seen["config"] = config
            seen["employee"] = context.process["employeeName"]
            return ActionResult.ok({"laptopOrdered": True})

        dispatcher.register("ProvisionLaptop", provision_laptop)
        step = make_step("x", "Action", 2, config={"actionType": "ProvisionLaptop", "actionConfig": {"model": "X1"}})
        result = await dispatcher.dispatch(context_for(instance, step))

        assert result.output_variables == {"laptopOrdered": True}
        assert seen == {"config": {"model": "X1"}, "employee": "Ann Lee"}
        assert "ProvisionLaptop" in dispatcher.available_actions

    @pytest.mark.asyncio
    async def test_unknown_action_type(self, dispatcher, instance):
        step = make_step("x", "Action", 2, config={"actionType": "Teleport"})
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.error == "Unknown action type: Teleport"

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failure(self, dispatcher, instance):
        async def broken(config, context):
            raise RuntimeError("directory offline")

        dispatcher.register("Broken", broken)
        result = await dispatcher.dispatch(context_for(instance, make_step("x", "Action", 2, config={"actionType": "Broken"})))
        assert not result.success
        assert result.error == "directory offline"

    @pytest.mark.asyncio
    async def test_webhook_without_transport(self, dispatcher, instance):
        step = make_step("h", "Webhook", 2, config={"webhookUrl": "https://api.example.com"})
        result = await dispatcher.dispatch(context_for(instance, step))
        assert result.error == "No HTTP transport configured for webhook steps"
