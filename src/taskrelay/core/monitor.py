"""ExecutionMonitor -- 把 agent 会话信号翻译成状态流转

信号有两条来源：watcher（订阅 AgentSessionClient.watch 的后台任务）与
gateway 的 agent-callback 推送接口，二者走同一组回调。

回调全部幂等：任务已终态、任务当前绑定的 workspace 与信号不符（已被新一轮
委派取代）、或任务没有活跃委派时，信号视为过期，只记日志，不写事件。

recover_stuck_tasks 由运维接口触发，把超时未推进的任务置为 failed。
"""

import asyncio
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any

import structlog

from ..agent.models import AgentSignal, SignalKind
from ..agent.protocols import AgentSessionClient
from .config import (
    AGENT_CALL_TIMEOUT_S,
    get_max_execution_s,
    get_stuck_delegated_timeout_s,
    get_stuck_queued_timeout_s,
)
from .errors import TaskNotFoundError, TaskRelayError
from .models.enums import (
    ACTIVE_STATES,
    EXECUTABLE_STATES,
    TERMINAL_STATES,
    ActorType,
    TaskStatus,
)
from .models.event import ProgressNote
from .models.task import Task
from .state_machine import TaskStateMachine

log = structlog.get_logger()

DEFAULT_WORKSPACE_LOST_MESSAGE = "Workspace lost"
DEFAULT_AGENT_FAILED_MESSAGE = "Agent reported failure"


def stuck_reason(task: Task, now: datetime) -> str | None:
    """任务卡住时返回失败原因，否则返回 None

    queued / delegated 从最后一次更新起计时；in_progress 从开始执行起计时。
    """
    if task.status == TaskStatus.QUEUED:
        since, timeout_s = task.updated_at, get_stuck_queued_timeout_s()
    elif task.status == TaskStatus.DELEGATED:
        since, timeout_s = task.updated_at, get_stuck_delegated_timeout_s()
    elif task.status == TaskStatus.IN_PROGRESS:
        since, timeout_s = task.started_at or task.updated_at, get_max_execution_s()
    else:
        return None
    if (now - since).total_seconds() < timeout_s:
        return None
    return f"Task stuck in {task.status.value} for more than {timeout_s}s"


class ExecutionMonitor:
    """执行监控

    每个委派对应一个 watcher（按 task_id 索引，记录绑定的 workspace）；
    同一任务的新委派会取代旧 watcher。watcher 等待信号时不持有任何锁。
    """

    def __init__(
        self,
        state_machine: TaskStateMachine,
        agent_client: AgentSessionClient,
        hub=None,
    ) -> None:
        self._state_machine = state_machine
        self._agent_client = agent_client
        self._hub = hub
        self._watchers: dict[str, tuple[str, asyncio.Task]] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # 信号回调
    # ------------------------------------------------------------------

    async def on_agent_progress(
        self,
        task_id: str,
        note: str | None = None,
        workspace_id: str | None = None,
        actor_type: ActorType = ActorType.WORKSPACE_CALLBACK,
    ) -> Task | None:
        """首个信号把 delegated 推进到 in_progress，之后仅推送进度说明"""
        async with self._state_machine.task_locks.hold(task_id):
            task = await self._state_machine.get_task(task_id)
            if self._is_stale(task, workspace_id, "progress"):
                return None

            if task.status == TaskStatus.DELEGATED:
                return await self._state_machine.apply_transition(
                    task_id,
                    TaskStatus.IN_PROGRESS,
                    actor_type,
                    actor_id=task.workspace_id,
                    reason=note or "Agent started",
                )

        log.info("agent_progress", task_id=task_id, workspace_id=task.workspace_id, note=note)
        if self._hub is not None:
            await self._hub.broadcast(
                task_id,
                ProgressNote(
                    task_id=task_id,
                    note=note,
                    workspace_id=task.workspace_id,
                    created_at=datetime.now(UTC),
                ),
            )
        return task

    async def on_agent_completed(
        self,
        task_id: str,
        output_summary: str | None = None,
        output_branch: str | None = None,
        output_pr_url: str | None = None,
        workspace_id: str | None = None,
        actor_type: ActorType = ActorType.WORKSPACE_CALLBACK,
    ) -> Task | None:
        """完成信号：-> completed（仍为 delegated 时先经过 in_progress）"""
        async with self._state_machine.task_locks.hold(task_id):
            task = await self._state_machine.get_task(task_id)
            if self._is_stale(task, workspace_id, "completed"):
                return None

            if task.status == TaskStatus.DELEGATED:
                await self._state_machine.apply_transition(
                    task_id,
                    TaskStatus.IN_PROGRESS,
                    actor_type,
                    actor_id=task.workspace_id,
                    reason="Agent started",
                )
            updated = await self._state_machine.apply_transition(
                task_id,
                TaskStatus.COMPLETED,
                actor_type,
                actor_id=task.workspace_id,
                reason="Agent completed",
                output_summary=output_summary,
                output_branch=output_branch,
                output_pr_url=output_pr_url,
            )

        self.release(task, stop_session=False)
        return updated

    async def on_agent_failed(
        self,
        task_id: str,
        reason: str | None = None,
        workspace_id: str | None = None,
        actor_type: ActorType = ActorType.WORKSPACE_CALLBACK,
    ) -> Task | None:
        """失败信号：-> failed，error_message 为 agent 给出的原因"""
        return await self._fail(
            task_id,
            reason or DEFAULT_AGENT_FAILED_MESSAGE,
            workspace_id,
            actor_type,
            signal="failed",
        )

    async def on_workspace_lost(
        self,
        task_id: str,
        workspace_id: str | None = None,
        reason: str | None = None,
        actor_type: ActorType = ActorType.WORKSPACE_CALLBACK,
    ) -> Task | None:
        """workspace 不可达：-> failed"""
        return await self._fail(
            task_id,
            reason or DEFAULT_WORKSPACE_LOST_MESSAGE,
            workspace_id,
            actor_type,
            signal="workspace_lost",
        )

    async def handle_signal(
        self,
        task_id: str,
        signal: AgentSignal,
        workspace_id: str | None = None,
        actor_type: ActorType = ActorType.WORKSPACE_CALLBACK,
    ) -> Task | None:
        """按信号类型分发到对应回调"""
        match signal.kind:
            case SignalKind.PROGRESS:
                return await self.on_agent_progress(
                    task_id, signal.note, workspace_id, actor_type
                )
            case SignalKind.COMPLETED:
                return await self.on_agent_completed(
                    task_id,
                    signal.output_summary,
                    signal.output_branch,
                    signal.output_pr_url,
                    workspace_id,
                    actor_type,
                )
            case SignalKind.FAILED:
                return await self.on_agent_failed(
                    task_id, signal.reason, workspace_id, actor_type
                )
            case SignalKind.WORKSPACE_LOST:
                return await self.on_workspace_lost(
                    task_id, workspace_id, signal.reason, actor_type
                )

    # ------------------------------------------------------------------
    # 取消
    # ------------------------------------------------------------------

    async def cancel(
        self,
        project_id: str,
        task_id: str,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> Task:
        """取消任务

        执行中的任务：停止会话的请求在后台发出，不等待对端确认，
        任务立即进入 cancelled。completed / cancelled 抛 IllegalTransitionError。
        """
        async with self._state_machine.task_locks.hold(task_id):
            previous = await self._state_machine.get_task(task_id, project_id)
            task = await self._state_machine.apply_transition(
                task_id,
                TaskStatus.CANCELLED,
                actor_type,
                actor_id=actor_id,
                reason=reason or "Cancelled",
                expected_version=expected_version,
            )

        if previous.status in ACTIVE_STATES:
            self.release(previous, stop_session=True)
        return task

    # ------------------------------------------------------------------
    # 卡住任务恢复
    # ------------------------------------------------------------------

    async def recover_stuck_tasks(self, now: datetime | None = None) -> list[Task]:
        """把卡住的 queued / delegated / in_progress 任务置为 failed

        每个候选任务在任务锁内重新读取：扫描之后状态或版本已变化的任务跳过。
        仍绑定会话的任务会在后台停止会话。判定时长见 stuck_reason。

        Args:
            now: 判定时刻，None 取当前 UTC 时间

        Returns:
            本次被置为 failed 的任务
        """
        now = now or datetime.now(UTC)
        recovered: list[Task] = []
        for candidate in await self._state_machine.list_tasks_in_states(EXECUTABLE_STATES):
            if stuck_reason(candidate, now) is None:
                continue
            task = await self._recover(candidate, now)
            if task is not None:
                recovered.append(task)
        log.info("stuck_task_scan_finished", recovered=len(recovered))
        return recovered

    async def _recover(self, observed: Task, now: datetime) -> Task | None:
        task_id = observed.task_id
        async with self._state_machine.task_locks.hold(task_id):
            try:
                task = await self._state_machine.get_task(task_id)
            except TaskNotFoundError:
                return None
            reason = stuck_reason(task, now)
            if reason is None or task.version != observed.version:
                log.info(
                    "stuck_task_skipped",
                    task_id=task_id,
                    status=task.status.value,
                    observed_status=observed.status.value,
                )
                return None

            log.warning(
                "stuck_task_recovering",
                task_id=task_id,
                project_id=task.project_id,
                status=task.status.value,
                workspace_id=task.workspace_id,
                reason=reason,
            )
            updated = await self._state_machine.apply_transition(
                task_id,
                TaskStatus.FAILED,
                ActorType.SYSTEM,
                reason=reason,
                error_message=reason,
                expected_version=task.version,
            )

        if task.status in ACTIVE_STATES:
            self.release(task, stop_session=True)
        return updated

    # ------------------------------------------------------------------
    # watcher 管理
    # ------------------------------------------------------------------

    def start_watch(self, task_id: str, workspace_id: str, session_id: str) -> None:
        """为一次委派启动 watcher，取代同一任务的旧 watcher"""
        self._cancel_watcher(task_id)
        watcher = asyncio.create_task(
            self._watch(task_id, workspace_id, session_id),
            name=f"watch-{task_id}",
        )
        self._watchers[task_id] = (workspace_id, watcher)
        watcher.add_done_callback(lambda t: self._on_watcher_done(task_id, t))
        log.info(
            "agent_watch_started",
            task_id=task_id,
            workspace_id=workspace_id,
            session_id=session_id,
        )

    def release(self, task: Task, stop_session: bool) -> None:
        """活跃委派结束：撤掉 watcher，按需在后台停止会话

        Args:
            task: 结束前的任务快照（含 workspace_id / agent_session_id）
            stop_session: 是否需要请求对端停止会话
        """
        self._cancel_watcher(task.task_id, task.workspace_id)
        if stop_session and task.workspace_id and task.agent_session_id:
            self.spawn(
                self._stop_session(task.task_id, task.workspace_id, task.agent_session_id),
                name=f"stop-{task.task_id}",
            )

    def stop_session_later(self, task_id: str, workspace_id: str, session_id: str) -> None:
        """后台停止会话（不关联 watcher）"""
        self.spawn(
            self._stop_session(task_id, workspace_id, session_id),
            name=f"stop-{task_id}",
        )

    def is_watching(self, task_id: str) -> bool:
        entry = self._watchers.get(task_id)
        return entry is not None and not entry[1].done()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """启动后台任务并保留引用，异常在完成回调中记录"""
        background = asyncio.create_task(coro, name=name)
        self._background.add(background)
        background.add_done_callback(self._on_background_done)
        return background

    async def shutdown(self) -> None:
        """取消所有 watcher 与后台任务"""
        pending = [t for _, t in self._watchers.values()] + list(self._background)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._watchers.clear()
        self._background.clear()
        log.info("execution_monitor_shutdown", cancelled=len(pending))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _fail(
        self,
        task_id: str,
        message: str,
        workspace_id: str | None,
        actor_type: ActorType,
        signal: str,
    ) -> Task | None:
        async with self._state_machine.task_locks.hold(task_id):
            task = await self._state_machine.get_task(task_id)
            if self._is_stale(task, workspace_id, signal):
                return None
            updated = await self._state_machine.apply_transition(
                task_id,
                TaskStatus.FAILED,
                actor_type,
                actor_id=task.workspace_id,
                reason=message,
                error_message=message,
            )

        self.release(task, stop_session=False)
        return updated

    @staticmethod
    def _is_stale(task: Task, workspace_id: str | None, signal: str) -> bool:
        if task.status in TERMINAL_STATES:
            reason = "terminal"
        elif task.status not in ACTIVE_STATES or task.workspace_id is None:
            reason = "not_delegated"
        elif workspace_id is not None and workspace_id != task.workspace_id:
            reason = "superseded"
        else:
            return False
        log.info(
            "agent_signal_stale",
            task_id=task.task_id,
            signal=signal,
            status=task.status.value,
            signal_workspace_id=workspace_id,
            task_workspace_id=task.workspace_id,
            stale_reason=reason,
        )
        return True

    async def _watch(self, task_id: str, workspace_id: str, session_id: str) -> None:
        try:
            async for signal in self._agent_client.watch(workspace_id, session_id):
                try:
                    await self.handle_signal(
                        task_id, signal, workspace_id, ActorType.WORKSPACE_CALLBACK
                    )
                except TaskRelayError as e:
                    log.warning(
                        "agent_signal_rejected",
                        task_id=task_id,
                        workspace_id=workspace_id,
                        signal=signal.kind.value,
                        error_code=e.code,
                        error=e.message,
                    )
                if signal.kind != SignalKind.PROGRESS:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(
                "agent_watch_failed",
                task_id=task_id,
                workspace_id=workspace_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.on_workspace_lost(
                task_id,
                workspace_id,
                f"Agent signal stream failed: {type(e).__name__}",
                ActorType.SYSTEM,
            )
            return
        log.info("agent_watch_ended", task_id=task_id, workspace_id=workspace_id)

    def _cancel_watcher(self, task_id: str, workspace_id: str | None = None) -> None:
        entry = self._watchers.get(task_id)
        if entry is None:
            return
        bound_workspace, watcher = entry
        if workspace_id is not None and bound_workspace != workspace_id:
            return
        self._watchers.pop(task_id, None)
        # watcher 自身触发的终态回调不能取消自己
        if watcher is not asyncio.current_task() and not watcher.done():
            watcher.cancel()

    def _on_watcher_done(self, task_id: str, watcher: asyncio.Task) -> None:
        entry = self._watchers.get(task_id)
        if entry is not None and entry[1] is watcher:
            self._watchers.pop(task_id, None)
        if not watcher.cancelled() and watcher.exception() is not None:
            log.error(
                "agent_watch_crashed",
                task_id=task_id,
                error=str(watcher.exception()),
            )

    async def _stop_session(self, task_id: str, workspace_id: str, session_id: str) -> None:
        await asyncio.wait_for(
            self._agent_client.stop(workspace_id, session_id),
            timeout=AGENT_CALL_TIMEOUT_S,
        )
        log.info(
            "agent_session_stop_requested",
            task_id=task_id,
            workspace_id=workspace_id,
            session_id=session_id,
        )

    def _on_background_done(self, background: asyncio.Task) -> None:
        self._background.discard(background)
        if background.cancelled():
            return
        exc = background.exception()
        if exc is not None:
            log.warning(
                "background_task_failed",
                name=background.get_name(),
                error=str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
            )
