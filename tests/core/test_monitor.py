"""ExecutionMonitor 测试

测试内容：
1. 回调推进状态：progress / completed / failed / workspace_lost
2. 幂等与过期信号：重复完成、被取代的委派、终态任务
3. 取消：执行中任务立即 cancelled，停止请求在后台进行
4. watcher：信号流驱动状态、流异常视为 workspace 丢失
5. 卡住任务恢复：按状态判定超时，扫描后已变化的任务跳过
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from taskrelay.agent.models import AgentSignal, SignalKind
from taskrelay.core.errors import IllegalTransitionError
from taskrelay.core.models import ActorType, EventType, ProgressNote, TaskStatus

PROJECT_ID = "proj-1"


@pytest.fixture
def delegated_task(delegation, make_task):
    """返回一个创建并委派任务的协程工厂"""

    async def _make(title: str = "Ship it", workspace_id: str = "ws-1"):
        task = await make_task(title, status=TaskStatus.READY)
        return await delegation.delegate(PROJECT_ID, task.task_id, workspace_id)

    return _make


class TestCallbacks:
    async def test_first_progress_moves_to_in_progress(self, monitor, delegated_task, stores):
        task = await delegated_task()

        updated = await monitor.on_agent_progress(task.task_id, "cloning repo", "ws-1")

        assert updated.status == TaskStatus.IN_PROGRESS
        assert updated.started_at is not None
        last = (await stores.event_store.get_events_for_task(task.task_id))[-1]
        assert last.actor_type == ActorType.WORKSPACE_CALLBACK
        assert last.actor_id == "ws-1"

    async def test_later_progress_is_annotation_only(self, monitor, delegated_task, stores, hub):
        task = await delegated_task()
        await monitor.on_agent_progress(task.task_id, "started", "ws-1")
        before = len(await stores.event_store.get_events_for_task(task.task_id))

        result = await monitor.on_agent_progress(task.task_id, "running tests", "ws-1")

        assert result.status == TaskStatus.IN_PROGRESS
        assert len(await stores.event_store.get_events_for_task(task.task_id)) == before
        notes = hub.of_type(ProgressNote)
        assert notes[-1].note == "running tests"

    async def test_completed_from_delegated_passes_in_progress(
        self, monitor, delegated_task, stores
    ):
        task = await delegated_task()

        done = await monitor.on_agent_completed(
            task.task_id,
            output_summary="Added page",
            output_branch="task/ship-it-01abcd",
            output_pr_url="https://example.com/pr/1",
            workspace_id="ws-1",
        )

        assert done.status == TaskStatus.COMPLETED
        assert done.output_summary == "Added page"
        assert done.output_pr_url == "https://example.com/pr/1"
        assert done.started_at is not None
        assert done.completed_at is not None
        statuses = [e.to_status for e in await stores.event_store.get_events_for_task(task.task_id)]
        assert statuses[-3:] == [
            TaskStatus.DELEGATED,
            TaskStatus.IN_PROGRESS,
            TaskStatus.COMPLETED,
        ]
        assert not monitor.is_watching(task.task_id)

    async def test_duplicate_completion_is_noop(self, monitor, delegated_task, stores):
        task = await delegated_task()
        await monitor.on_agent_completed(task.task_id, output_summary="first", workspace_id="ws-1")
        count = len(await stores.event_store.get_events_for_task(task.task_id))

        again = await monitor.on_agent_completed(
            task.task_id, output_summary="second", workspace_id="ws-1"
        )

        assert again is None
        stored = await stores.task_store.get_task(task.task_id)
        assert stored.output_summary == "first"
        assert len(await stores.event_store.get_events_for_task(task.task_id)) == count

    async def test_duplicate_failure_is_noop(self, monitor, delegated_task, stores):
        task = await delegated_task()
        first = await monitor.on_agent_failed(task.task_id, "tests failed", "ws-1")
        second = await monitor.on_agent_failed(task.task_id, "tests failed", "ws-1")

        assert first.status == TaskStatus.FAILED
        assert first.error_message == "tests failed"
        assert second is None
        failed_events = [
            e
            for e in await stores.event_store.get_events_for_task(task.task_id)
            if e.to_status == TaskStatus.FAILED
        ]
        assert len(failed_events) == 1

    async def test_workspace_lost(self, monitor, delegated_task):
        task = await delegated_task()
        await monitor.on_agent_progress(task.task_id, None, "ws-1")
        lost = await monitor.on_workspace_lost(task.task_id, "ws-1")
        assert lost.status == TaskStatus.FAILED
        assert lost.error_message == "Workspace lost"

    async def test_signal_from_superseded_workspace_is_stale(
        self, monitor, delegation, service, delegated_task
    ):
        task = await delegated_task(workspace_id="ws-old")
        await monitor.on_agent_failed(task.task_id, "crashed", "ws-old")
        await service.transition(PROJECT_ID, task.task_id, TaskStatus.READY)
        await delegation.delegate(PROJECT_ID, task.task_id, "ws-new")

        late = await monitor.on_agent_completed(
            task.task_id, output_summary="late", workspace_id="ws-old"
        )
        assert late is None

        current = await monitor.on_agent_progress(task.task_id, "hello", "ws-new")
        assert current.status == TaskStatus.IN_PROGRESS
        assert current.workspace_id == "ws-new"

    async def test_signal_for_undelegated_task_is_stale(self, monitor, make_task):
        task = await make_task(status=TaskStatus.READY)
        assert await monitor.on_agent_progress(task.task_id, "hi") is None


class TestCancel:
    async def test_cancel_executing_task_is_immediate(
        self, monitor, delegated_task, agent_client, stores
    ):
        """停止请求卡住时，取消依然立即生效"""
        agent_client.stop_gate = asyncio.Event()
        task = await delegated_task()
        await monitor.on_agent_progress(task.task_id, "started", "ws-1")

        cancelled = await asyncio.wait_for(
            monitor.cancel(PROJECT_ID, task.task_id, reason="changed my mind"), timeout=1.0
        )

        assert cancelled.status == TaskStatus.CANCELLED
        assert not monitor.is_watching(task.task_id)
        # 后台停止请求已发出但尚未返回
        await asyncio.sleep(0.01)
        assert agent_client.stopped == [("ws-1", task.agent_session_id)]
        last = (await stores.event_store.get_events_for_task(task.task_id))[-1]
        assert last.reason == "changed my mind"

        # 迟到的完成信号被忽略
        assert await monitor.on_agent_completed(task.task_id, workspace_id="ws-1") is None
        agent_client.stop_gate.set()

    async def test_cancel_idle_task_does_not_stop_session(self, monitor, make_task, agent_client):
        task = await make_task(status=TaskStatus.QUEUED)
        cancelled = await monitor.cancel(PROJECT_ID, task.task_id)
        assert cancelled.status == TaskStatus.CANCELLED
        await asyncio.sleep(0)
        assert agent_client.stopped == []

    async def test_cancel_completed_is_illegal(self, monitor, delegated_task):
        task = await delegated_task()
        await monitor.on_agent_completed(task.task_id, workspace_id="ws-1")
        with pytest.raises(IllegalTransitionError):
            await monitor.cancel(PROJECT_ID, task.task_id)

    async def test_user_failure_of_executing_task_stops_session(
        self, service, delegated_task, agent_client
    ):
        task = await delegated_task()
        await service.transition(
            PROJECT_ID, task.task_id, TaskStatus.FAILED, error_message="abandoned"
        )
        await asyncio.sleep(0.01)
        assert agent_client.stopped == [("ws-1", task.agent_session_id)]


class TestWatcher:
    async def test_signals_drive_task_to_completion(
        self, delegated_task, agent_client, wait_for_status
    ):
        task = await delegated_task()
        session_id = task.agent_session_id

        await agent_client.emit(session_id, AgentSignal(kind=SignalKind.PROGRESS, note="go"))
        await wait_for_status(task.task_id, TaskStatus.IN_PROGRESS)

        await agent_client.emit(
            session_id,
            AgentSignal(kind=SignalKind.COMPLETED, output_summary="all green"),
        )
        await wait_for_status(task.task_id, TaskStatus.COMPLETED)

    async def test_stream_failure_marks_workspace_lost(
        self, delegated_task, agent_client, stores, wait_for_status
    ):
        task = await delegated_task()
        await agent_client.fail_stream(task.agent_session_id, ConnectionError("reset"))

        await wait_for_status(task.task_id, TaskStatus.FAILED)
        stored = await stores.task_store.get_task(task.task_id)
        assert "ConnectionError" in stored.error_message
        last = (await stores.event_store.get_events_for_task(task.task_id))[-1]
        assert last.actor_type == ActorType.SYSTEM

    async def test_stream_end_leaves_task_untouched(
        self, delegated_task, agent_client, monitor, stores
    ):
        task = await delegated_task()
        await agent_client.end_stream(task.agent_session_id)
        for _ in range(50):
            if not monitor.is_watching(task.task_id):
                break
            await asyncio.sleep(0.01)

        assert not monitor.is_watching(task.task_id)
        stored = await stores.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.DELEGATED

    async def test_redelegation_supersedes_watcher(
        self, monitor, service, delegation, delegated_task, agent_client, stores
    ):
        task = await delegated_task(workspace_id="ws-old")
        await monitor.on_agent_failed(task.task_id, "boom", "ws-old")
        await service.transition(PROJECT_ID, task.task_id, TaskStatus.READY)
        redelegated = await delegation.delegate(PROJECT_ID, task.task_id, "ws-new")

        # 旧会话的迟到信号不影响新一轮委派
        await agent_client.emit(
            task.agent_session_id, AgentSignal(kind=SignalKind.COMPLETED, output_summary="old")
        )
        await asyncio.sleep(0.05)
        stored = await stores.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.DELEGATED
        assert stored.agent_session_id == redelegated.agent_session_id
        assert monitor.is_watching(task.task_id)

    async def test_shutdown_cancels_watchers(self, monitor, delegated_task):
        task = await delegated_task()
        assert monitor.is_watching(task.task_id)
        await monitor.shutdown()
        assert not monitor.is_watching(task.task_id)


class TestEventTypes:
    async def test_delegation_failures_do_not_change_status(
        self, delegation, agent_client, stores, make_task
    ):
        from taskrelay.agent.exceptions import SubmitError

        task = await make_task(status=TaskStatus.READY)
        agent_client.submit_error = SubmitError("ws-1", "busy")
        for _ in range(2):
            with pytest.raises(SubmitError):
                await delegation.delegate(PROJECT_ID, task.task_id, "ws-1")

        events = await stores.event_store.get_events_for_task(task.task_id)
        assert [e.type for e in events].count(EventType.DELEGATION_FAILED) == 2
        assert (await stores.task_store.get_task(task.task_id)).status == TaskStatus.READY


class TestStuckTaskRecovery:
    async def test_stuck_tasks_fail_as_system(
        self, monitor, delegated_task, make_task, stores, agent_client
    ):
        queued = await make_task("Queued", status=TaskStatus.QUEUED)
        delegated = await delegated_task("Delegated", "ws-1")
        running = await delegated_task("Running", "ws-2")
        await monitor.on_agent_progress(running.task_id, "started", "ws-2")
        idle = await make_task("Idle", status=TaskStatus.READY)

        recovered = await monitor.recover_stuck_tasks(now=datetime.now(UTC) + timedelta(hours=5))

        assert {t.task_id for t in recovered} == {
            queued.task_id,
            delegated.task_id,
            running.task_id,
        }
        for task in recovered:
            assert task.status == TaskStatus.FAILED
            assert "stuck" in task.error_message
            last = (await stores.event_store.get_events_for_task(task.task_id))[-1]
            assert last.actor_type == ActorType.SYSTEM
            assert last.to_status == TaskStatus.FAILED
        assert (await stores.task_store.get_task(idle.task_id)).status == TaskStatus.READY
        assert not monitor.is_watching(delegated.task_id)

        await asyncio.sleep(0.01)
        assert sorted(agent_client.stopped) == [("ws-1", "sess-1"), ("ws-2", "sess-2")]

    async def test_thresholds_differ_per_status(
        self, monitor, delegated_task, make_task, monkeypatch
    ):
        monkeypatch.delenv("TASKRELAY_TASK_STUCK_QUEUED_TIMEOUT_S", raising=False)
        monkeypatch.delenv("TASKRELAY_TASK_STUCK_DELEGATED_TIMEOUT_S", raising=False)
        queued = await make_task("Queued", status=TaskStatus.QUEUED)
        await delegated_task()

        # 11 分钟：超过 queued 的 10 分钟，未到 delegated 的 16 分钟
        recovered = await monitor.recover_stuck_tasks(
            now=datetime.now(UTC) + timedelta(minutes=11)
        )
        assert [t.task_id for t in recovered] == [queued.task_id]

    async def test_execution_time_counts_from_start(self, monitor, delegated_task, monkeypatch):
        monkeypatch.setenv("TASKRELAY_TASK_MAX_EXECUTION_S", "3600")
        task = await delegated_task()
        running = await monitor.on_agent_progress(task.task_id, "started", "ws-1")

        early = await monitor.recover_stuck_tasks(now=running.started_at + timedelta(minutes=30))
        assert early == []

        late = await monitor.recover_stuck_tasks(now=running.started_at + timedelta(hours=2))
        assert [t.task_id for t in late] == [task.task_id]

    async def test_task_changed_after_scan_is_skipped(
        self, monitor, state_machine, make_task, stores, monkeypatch
    ):
        task = await make_task(status=TaskStatus.QUEUED)
        snapshot = await stores.task_store.list_tasks_in_states({TaskStatus.QUEUED})
        await monitor.cancel(PROJECT_ID, task.task_id)

        async def _stale_listing(statuses):
            return snapshot

        monkeypatch.setattr(state_machine, "list_tasks_in_states", _stale_listing)

        recovered = await monitor.recover_stuck_tasks(now=datetime.now(UTC) + timedelta(hours=5))

        assert recovered == []
        assert (await stores.task_store.get_task(task.task_id)).status == TaskStatus.CANCELLED
