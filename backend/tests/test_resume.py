"""Tests for event-driven and polling resume of waiting workflows."""

import pytest

from conftest import approval_flow, make_definition, make_step
from core.constants import InstanceStatus, StepStatus
from workflow.engine import StartWorkflowOptions
from workflow.resume import ResumeService
from workflow.results import ActionResult


def joiner(process_id="proc-1"):
    return StartWorkflowOptions(
        process_id=process_id,
        process_type="Joiner",
        employee_name="Ann Lee",
        manager_id="mgr-1",
        manager_email="boss@example.com",
    )


def task_flow():
    return make_definition(
        [
            make_step("start", "Start", 1),
            make_step("tasks", "AssignTasks", 2, config={"taskTemplateId": 101, "assigneeRole": "manager"}),
            make_step("end", "End", 3),
        ]
    )


async def pending_items(instances, instance_id, step_id):
    state = await instances.get_step_state(instance_id, step_id)
    return state.task_assignment_ids or state.approval_ids


# ─── Event-driven resume ───

@pytest.mark.unit
class TestTaskCompleted:
    @pytest.mark.asyncio
    async def test_single_task(self, engine, resume, definitions, instances):
        await definitions.create(
            make_definition(
                [
                    make_step("start", "Start", 1),
                    make_step("desk", "CreateTask", 2, config={"taskTitle": "Prepare desk", "assigneeRole": "manager"}),
                    make_step("end", "End", 3),
                ],
                id="def-desk",
                workflowCode="DESK",
                isDefault=False,
            )
        )
        started = await engine.start_workflow(StartWorkflowOptions(process_id="proc-1", workflow_code="DESK", manager_id="mgr-1"))
        assert started.status == InstanceStatus.WAITING_FOR_TASK

        [task_id] = await pending_items(instances, started.instance_id, "desk")
        result = await resume.on_task_completed(started.instance_id, "desk", task_id, {"deskNumber": "4B"})

        assert result.status == InstanceStatus.COMPLETED
        instance = await instances.get_by_id(started.instance_id)
        assert instance.variables["taskCompleted"] is True
        assert instance.variables["deskNumber"] == "4B"

    @pytest.mark.asyncio
    async def test_template_tasks_wait_for_all(self, engine, resume, definitions, instances):
        await definitions.create(task_flow())
        started = await engine.start_workflow(joiner())
        assert started.status == InstanceStatus.WAITING_FOR_TASK

        first, second = await pending_items(instances, started.instance_id, "tasks")
        assert await resume.on_task_completed(started.instance_id, "tasks", first) is None
        state = await instances.get_step_state(started.instance_id, "tasks")
        assert state.status == StepStatus.IN_PROGRESS
        assert state.result["completedTaskIds"] == [first]

        # Duplicate event for the same task changes nothing
        assert await resume.on_task_completed(started.instance_id, "tasks", first) is None

        result = await resume.on_task_completed(started.instance_id, "tasks", second)
        assert result.status == InstanceStatus.COMPLETED
        instance = await instances.get_by_id(started.instance_id)
        assert instance.variables["completedTaskIds"] == [first, second]

    @pytest.mark.asyncio
    async def test_event_for_finished_workflow(self, engine, resume, definitions, instances):
        await definitions.create(task_flow())
        started = await engine.start_workflow(joiner())
        await engine.cancel_workflow(started.instance_id)
        assert await resume.on_task_completed(started.instance_id, "tasks", "task-1") is None

    @pytest.mark.asyncio
    async def test_parallel_branch_tasks(self, engine, resume, definitions, instances):
        await definitions.create(
            make_definition(
                [
                    make_step("start", "Start", 1),
                    make_step("fan", "Parallel", 2, config={"parallelStepIds": ["laptop", "badge"]}),
                    make_step("laptop", "CreateTask", 3, config={"taskTitle": "Order laptop", "assigneeRole": "manager"}),
                    make_step("badge", "SetVariable", 4, config={"variableName": "badge", "variableValue": "B-7"}),
                    make_step("end", "End", 5),
                ]
            )
        )
        started = await engine.start_workflow(joiner())
        assert started.status == InstanceStatus.WAITING_FOR_TASK
        assert started.current_step_id == "fan"

        [task_id] = await pending_items(instances, started.instance_id, "laptop")
        result = await resume.on_task_completed(started.instance_id, "laptop", task_id)

        assert result.status == InstanceStatus.COMPLETED
        for step_id in ("fan", "laptop", "badge", "end"):
            state = await instances.get_step_state(started.instance_id, step_id)
            assert state.status == StepStatus.COMPLETED


@pytest.mark.unit
class TestApprovalCompleted:
    @pytest.mark.asyncio
    async def test_approval_decision(self, engine, resume, definitions, instances):
        await definitions.create(approval_flow())
        started = await engine.start_workflow(joiner())
        [approval_id] = await pending_items(instances, started.instance_id, "approve")

        result = await resume.on_approval_completed(
            started.instance_id, "approve", approval_id, approved=False, comments="Budget freeze", approver_user_id="mgr-1"
        )

        assert result.status == InstanceStatus.COMPLETED
        instance = await instances.get_by_id(started.instance_id)
        assert instance.variables["approved"] is False
        assert instance.variables["isRejected"] is True
        assert instance.variables["approverComments"] == "Budget freeze"

    @pytest.mark.asyncio
    async def test_approval_for_finished_workflow(self, engine, resume, definitions):
        await definitions.create(approval_flow())
        started = await engine.start_workflow(joiner())
        await resume.on_approval_completed(started.instance_id, "approve", "approval-1", approved=True)
        assert await resume.on_approval_completed(started.instance_id, "approve", "approval-1", approved=True) is None


# ─── WaitForTasks ───

def watch_flow(**wait_config):
    return make_definition(
        [
            make_step("start", "Start", 1),
            make_step("watch", "WaitForTasks", 2, config={"waitForTaskIds": ["provision"], **wait_config},
                      onComplete={"type": "goto", "targetStepId": "end"}),
            make_step("provision", "Action", 3),
            make_step("end", "End", 4),
        ]
    )


@pytest.mark.unit
class TestWaitForTasksResume:
    @pytest.mark.asyncio
    async def test_watched_step_completion_resumes(self, engine, resume, definitions, instances):
        await definitions.create(watch_flow())
        started = await engine.start_workflow(joiner())
        assert started.status == InstanceStatus.WAITING_FOR_TASK
        assert started.current_step_id == "watch"

        result = await resume.on_task_completed(started.instance_id, "provision", "ext-1")
        assert result.status == InstanceStatus.COMPLETED
        state = await instances.get_step_state(started.instance_id, "watch")
        assert state.status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_poll_applies_timeout(self, engine, resume, definitions, instances, clock):
        await definitions.create(watch_flow(timeoutHours=2, onTimeout="skip"))
        started = await engine.start_workflow(joiner())

        clock.advance(hours=3)
        poll = await resume.poll_and_resume()

        assert poll.resumed == 1
        instance = await instances.get_by_id(started.instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert (await instances.get_step_state(instance.id, "watch")).status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_poll_escalates_sla_breach(self, engine, resume, definitions, instances, clock, sender):
        await definitions.create(watch_flow(slaHours=24))
        started = await engine.start_workflow(joiner())

        clock.advance(hours=25)
        poll = await resume.poll_and_resume()

        assert poll.still_waiting == 1
        assert "sla_breach" in sender.events()
        instance = await instances.get_by_id(started.instance_id)
        assert instance.status == InstanceStatus.WAITING_FOR_TASK


# ─── Polling ───

def timer_flow(**overrides):
    return make_definition(
        [
            make_step("start", "Start", 1),
            make_step("cool_off", "Wait", 2, config={"waitHours": 2}),
            make_step("end", "End", 3),
        ],
        **overrides,
    )


@pytest.mark.unit
class TestPolling:
    @pytest.mark.asyncio
    async def test_timer_resumes_when_due(self, engine, resume, definitions, instances, clock):
        await definitions.create(timer_flow())
        started = await engine.start_workflow(joiner())
        assert started.status == InstanceStatus.WAITING_FOR_INPUT

        early = await resume.poll_and_resume()
        assert early.waiting_found == 1
        assert early.still_waiting == 1
        assert early.resumed == 0

        clock.advance(hours=2)
        due = await resume.poll_and_resume()
        assert due.resumed == 1
        assert (await instances.get_by_id(started.instance_id)).status == InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_due_retry_is_rerun(self, engine, resume, definitions, instances, clock):
        calls = []

        async def provision(config, context):
            calls.append(1)
            if len(calls) == 1:
                return ActionResult.fail("directory offline")
            return ActionResult.ok({"accountCreated": True})

        engine.dispatcher.register("ProvisionAccount", provision)
        await definitions.create(
            make_definition(
                [
                    make_step("start", "Start", 1),
                    make_step("provision", "Action", 2, config={"actionType": "ProvisionAccount"},
                              errorConfig={"action": "retry", "retryCount": 3, "retryDelayMinutes": 1}),
                    make_step("end", "End", 3),
                ]
            )
        )
        started = await engine.start_workflow(joiner())
        assert (await resume.poll_and_resume()).still_waiting == 1

        clock.advance(minutes=1)
        poll = await resume.poll_and_resume()
        assert poll.resumed == 1
        assert (await instances.get_by_id(started.instance_id)).status == InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_approvals_are_left_alone(self, engine, resume, definitions):
        await definitions.create(approval_flow())
        await engine.start_workflow(joiner())
        poll = await resume.poll_and_resume()
        assert poll.still_waiting == 1
        assert poll.resumed == 0

    @pytest.mark.asyncio
    async def test_overlapping_poll_is_skipped(self, resume):
        async with resume._poll_lock:
            poll = await resume.poll_and_resume()
        assert poll.skipped
        assert poll.to_dict()["skipped"] is True

    @pytest.mark.asyncio
    async def test_batch_size(self, engine, definitions, instances, clock):
        await definitions.create(approval_flow())
        for n in range(3):
            await engine.start_workflow(joiner(process_id=f"proc-{n}"))
        poll = await ResumeService(engine, instances, definitions, batch_size=2, clock=clock).poll_and_resume()
        assert poll.waiting_found == 2


# ─── Diagnostics ───

@pytest.mark.unit
class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_waiting_counts(self, engine, resume, definitions):
        await definitions.create(approval_flow())
        await definitions.create(timer_flow(id="def-timer", workflowCode="TIMER", isDefault=False))
        await engine.start_workflow(joiner("proc-1"))
        await engine.start_workflow(StartWorkflowOptions(process_id="proc-2", workflow_code="TIMER"))

        counts = await resume.get_waiting_counts()
        assert counts == {"waitingForTask": 0, "waitingForApproval": 1, "waitingForInput": 1, "total": 2}

    @pytest.mark.asyncio
    async def test_wait_status_for_tasks(self, engine, resume, definitions, instances):
        await definitions.create(task_flow())
        started = await engine.start_workflow(joiner())
        first, _ = await pending_items(instances, started.instance_id, "tasks")
        await resume.on_task_completed(started.instance_id, "tasks", first)

        status = await resume.get_wait_status(started.instance_id)
        assert status["waitingFor"] == "tasks"
        assert [item["status"] for item in status["pendingItems"]] == ["Completed", "Pending"]
        assert status["canResume"] is False
        assert status["blockedReason"] == "Waiting for 1 task(s) to complete"

    @pytest.mark.asyncio
    async def test_wait_status_for_timer(self, engine, resume, definitions, clock):
        await definitions.create(timer_flow())
        started = await engine.start_workflow(joiner())

        status = await resume.get_wait_status(started.instance_id)
        assert status["waitingFor"] == "time"
        assert status["canResume"] is False

        clock.advance(hours=2)
        assert (await resume.get_wait_status(started.instance_id))["canResume"] is True

    @pytest.mark.asyncio
    async def test_wait_status_for_approval(self, engine, resume, definitions):
        await definitions.create(approval_flow())
        started = await engine.start_workflow(joiner())
        status = await resume.get_wait_status(started.instance_id)
        assert status["waitingFor"] == "approvals"
        assert len(status["pendingItems"]) == 1
        assert status["blockedReason"] == "Waiting for approval decision"
