"""DelegationCoordinator 测试

测试内容：
1. 委派成功：提交后才进入 delegated，启动 watcher
2. 提交失败 / 超时：状态不变，记录 DELEGATION_FAILED
3. 前置条件：不可委派状态、blocked、workspace 已被占用
4. run_on_new_workspace：开机成功 / 失败
"""

import asyncio

import pytest
from taskrelay.agent.exceptions import ProvisionError, SubmitError
from taskrelay.core import delegation as delegation_module
from taskrelay.core.errors import (
    ConflictError,
    TaskBlockedError,
    TaskNotDelegableError,
    TaskNotEditableError,
    ValidationError,
    WorkspaceBusyError,
)
from taskrelay.core.models import ActorType, EventType, TaskStatus

PROJECT_ID = "proj-1"


class TestDelegate:
    async def test_delegate_success(self, delegation, agent_client, monitor, stores, make_task):
        task = await make_task("Add login page", status=TaskStatus.READY)

        delegated = await delegation.delegate(PROJECT_ID, task.task_id, "ws-1", actor_id="alice")

        assert delegated.status == TaskStatus.DELEGATED
        assert delegated.workspace_id == "ws-1"
        assert delegated.agent_session_id == "sess-1"
        assert monitor.is_watching(task.task_id)

        workspace_id, payload = agent_client.submitted[0]
        assert workspace_id == "ws-1"
        assert payload.task_id == task.task_id
        assert payload.title == "Add login page"
        assert payload.branch_hint.startswith("task/add-login-page-")

        events = await stores.event_store.get_events_for_task(task.task_id)
        assert events[-1].to_status == TaskStatus.DELEGATED
        assert events[-1].actor_type == ActorType.USER
        assert events[-1].actor_id == "alice"

    async def test_delegate_from_queued(self, delegation, make_task):
        task = await make_task(status=TaskStatus.QUEUED)
        delegated = await delegation.delegate(PROJECT_ID, task.task_id, "ws-1")
        assert delegated.status == TaskStatus.DELEGATED

    async def test_submit_failure_keeps_status(
        self, delegation, agent_client, monitor, stores, make_task
    ):
        task = await make_task(status=TaskStatus.READY)
        agent_client.submit_error = SubmitError("ws-1", "connection refused")

        with pytest.raises(SubmitError):
            await delegation.delegate(PROJECT_ID, task.task_id, "ws-1")

        stored = await stores.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.READY
        assert stored.workspace_id is None
        assert not monitor.is_watching(task.task_id)

        last = (await stores.event_store.get_events_for_task(task.task_id))[-1]
        assert last.type == EventType.DELEGATION_FAILED
        assert last.from_status == last.to_status == TaskStatus.READY
        assert last.actor_type == ActorType.SYSTEM
        assert "connection refused" in last.reason

    async def test_unexpected_submit_error_is_wrapped(self, delegation, agent_client, make_task):
        task = await make_task(status=TaskStatus.READY)
        agent_client.submit_error = RuntimeError("socket closed")

        with pytest.raises(SubmitError) as exc_info:
            await delegation.delegate(PROJECT_ID, task.task_id, "ws-1")
        assert "socket closed" in exc_info.value.message

    async def test_submit_timeout(self, delegation, agent_client, stores, make_task, monkeypatch):
        monkeypatch.setattr(delegation_module, "AGENT_CALL_TIMEOUT_S", 0.05)
        agent_client.submit_delay = 1.0
        task = await make_task(status=TaskStatus.READY)

        with pytest.raises(SubmitError) as exc_info:
            await delegation.delegate(PROJECT_ID, task.task_id, "ws-1")
        assert "timed out" in exc_info.value.message

        stored = await stores.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.READY

    async def test_not_delegable(self, delegation, make_task):
        task = await make_task()
        with pytest.raises(TaskNotDelegableError):
            await delegation.delegate(PROJECT_ID, task.task_id, "ws-1")

    async def test_blocked(self, delegation, agent_client, make_task):
        dep = await make_task("Dependency")
        task = await make_task("Dependent", status=TaskStatus.READY, depends_on=[dep.task_id])
        with pytest.raises(TaskBlockedError):
            await delegation.delegate(PROJECT_ID, task.task_id, "ws-1")
        assert agent_client.submitted == []

    async def test_workspace_busy(self, delegation, agent_client, make_task):
        first = await make_task("First", status=TaskStatus.READY)
        second = await make_task("Second", status=TaskStatus.READY)
        await delegation.delegate(PROJECT_ID, first.task_id, "ws-1")

        with pytest.raises(WorkspaceBusyError) as exc_info:
            await delegation.delegate(PROJECT_ID, second.task_id, "ws-1")
        assert exc_info.value.active_task_id == first.task_id
        assert len(agent_client.submitted) == 1

    async def test_concurrent_delegations_bind_once(self, delegation, make_task):
        first = await make_task("First", status=TaskStatus.READY)
        second = await make_task("Second", status=TaskStatus.READY)

        results = await asyncio.gather(
            delegation.delegate(PROJECT_ID, first.task_id, "ws-shared"),
            delegation.delegate(PROJECT_ID, second.task_id, "ws-shared"),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], WorkspaceBusyError)

    async def test_blank_workspace_rejected(self, delegation, make_task):
        task = await make_task(status=TaskStatus.READY)
        with pytest.raises(ValidationError):
            await delegation.delegate(PROJECT_ID, task.task_id, "  ")

    async def test_dependency_edit_waits_for_inflight_delegation(
        self, delegation, service, graph, stores, agent_client, make_task
    ):
        dep = await make_task("Schema")
        task = await make_task("API", status=TaskStatus.READY)
        agent_client.submit_delay = 0.05

        delegating = asyncio.create_task(delegation.delegate(PROJECT_ID, task.task_id, "ws-1"))
        await asyncio.sleep(0.01)
        with pytest.raises(TaskNotEditableError) as exc_info:
            await service.add_dependency(PROJECT_ID, task.task_id, dep.task_id)
        assert exc_info.value.status == TaskStatus.DELEGATED

        delegated = await delegating
        assert delegated.status == TaskStatus.DELEGATED
        assert await stores.dependency_store.list_dependencies(task.task_id) == []
        assert await graph.is_blocked(task.task_id) is False

    async def test_binding_failure_records_attempt(
        self, delegation, state_machine, agent_client, stores, make_task, monkeypatch
    ):
        task = await make_task(status=TaskStatus.READY)

        async def _conflict(task_id, *args, **kwargs):
            raise ConflictError(task_id)

        monkeypatch.setattr(state_machine, "apply_transition", _conflict)

        with pytest.raises(ConflictError):
            await delegation.delegate(PROJECT_ID, task.task_id, "ws-1")

        stored = await stores.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.READY
        assert stored.agent_session_id is None

        last = (await stores.event_store.get_events_for_task(task.task_id))[-1]
        assert last.type == EventType.DELEGATION_FAILED
        assert last.from_status == last.to_status == TaskStatus.READY
        assert last.actor_type == ActorType.SYSTEM
        assert "sess-1" in last.reason

        await asyncio.sleep(0.01)
        assert agent_client.stopped == [("ws-1", "sess-1")]


class TestRunOnNewWorkspace:
    async def test_run_success(self, delegation, provisioner, agent_client, make_task):
        task = await make_task("Refactor billing module", status=TaskStatus.READY)

        delegated = await delegation.run_on_new_workspace(PROJECT_ID, task.task_id, "large")

        assert delegated.status == TaskStatus.DELEGATED
        assert delegated.workspace_id == "ws-new-1"
        project_id, branch_hint, size_hint = provisioner.launched[0]
        assert project_id == PROJECT_ID
        assert size_hint == "large"
        assert branch_hint == agent_client.submitted[0][1].branch_hint
        assert branch_hint.startswith("task/refactor-billing-module-")

    async def test_provision_failure_records_attempt(
        self, delegation, provisioner, agent_client, stores, make_task
    ):
        task = await make_task(status=TaskStatus.READY)
        provisioner.ready_error = ProvisionError("VM failed to boot", workspace_id="ws-new-1")

        with pytest.raises(ProvisionError):
            await delegation.run_on_new_workspace(PROJECT_ID, task.task_id)

        stored = await stores.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.READY
        assert agent_client.submitted == []
        last = (await stores.event_store.get_events_for_task(task.task_id))[-1]
        assert last.type == EventType.DELEGATION_FAILED
        assert last.reason == "VM failed to boot"

    async def test_launch_exception_is_wrapped(self, delegation, provisioner, make_task):
        task = await make_task(status=TaskStatus.READY)
        provisioner.launch_error = OSError("quota exceeded")
        with pytest.raises(ProvisionError) as exc_info:
            await delegation.run_on_new_workspace(PROJECT_ID, task.task_id)
        assert "quota exceeded" in exc_info.value.message

    async def test_run_checks_preconditions_before_provisioning(
        self, delegation, provisioner, make_task
    ):
        task = await make_task()
        with pytest.raises(TaskNotDelegableError):
            await delegation.run_on_new_workspace(PROJECT_ID, task.task_id)
        assert provisioner.launched == []
