"""任务状态机

唯一允许修改 Task.status 的组件。按流转表校验目标状态，在同一事务内
写入任务字段与一条 TaskStatusEvent，提交后推送事件并让依赖图重新计算
依赖方的 blocked。
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from ulid import ULID

from .errors import (
    ConflictError,
    IllegalTransitionError,
    TaskBlockedError,
    TaskNotFoundError,
    ValidationError,
)
from .graph import DependencyGraph
from .models.enums import TERMINAL_STATES, ActorType, EventType, TaskStatus, validate_transition
from .models.event import TaskStatusEvent
from .models.task import Task
from .store import StoreGroup
from .store.transaction import EventBuilder, append_event_only, update_task_and_append_event

log = structlog.get_logger()

DEFAULT_FAILURE_MESSAGE = "Task failed"


def build_event(
    task_id: str,
    event_type: EventType,
    from_status: TaskStatus | None,
    to_status: TaskStatus,
    actor_type: ActorType,
    actor_id: str | None = None,
    reason: str | None = None,
) -> EventBuilder:
    """返回按 task_seq 构建事件的工厂函数"""

    def _builder(seq: int) -> TaskStatusEvent:
        return TaskStatusEvent(
            event_id=str(ULID()),
            task_id=task_id,
            task_seq=seq,
            type=event_type,
            from_status=from_status,
            to_status=to_status,
            actor_type=actor_type,
            actor_id=actor_id,
            reason=reason,
            created_at=datetime.now(UTC),
        )

    return _builder


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def transition_fields(
    task: Task,
    to_status: TaskStatus,
    now: datetime,
    *,
    output_summary: str | None = None,
    output_branch: str | None = None,
    output_pr_url: str | None = None,
    error_message: str | None = None,
    workspace_id: str | None = None,
    agent_session_id: str | None = None,
) -> dict[str, Any]:
    """计算一次流转需要写入的列"""
    fields: dict[str, Any] = {"status": to_status, "updated_at": now}

    if to_status == TaskStatus.IN_PROGRESS and task.started_at is None:
        fields["started_at"] = now

    if to_status in TERMINAL_STATES:
        fields["completed_at"] = now

    if to_status == TaskStatus.READY:
        # 新一轮尝试：清除上一轮的绑定与产出，事件历史保留
        fields.update(
            workspace_id=None,
            agent_session_id=None,
            started_at=None,
            completed_at=None,
            error_message=None,
            output_summary=None,
            output_branch=None,
            output_pr_url=None,
        )
    elif to_status == TaskStatus.DELEGATED:
        fields["workspace_id"] = workspace_id
        fields["agent_session_id"] = agent_session_id
    elif to_status == TaskStatus.COMPLETED:
        fields.update(
            output_summary=_clean(output_summary),
            output_branch=_clean(output_branch),
            output_pr_url=_clean(output_pr_url),
        )
    elif to_status == TaskStatus.FAILED:
        fields["error_message"] = (
            _clean(error_message) or task.error_message or DEFAULT_FAILURE_MESSAGE
        )

    return fields


class TaskStateMachine:
    """状态机服务

    task_locks 由依赖图、协调器与执行监控共享：同一任务的所有修改串行执行。
    锁对象由依赖图持有。
    """

    def __init__(
        self,
        stores: StoreGroup,
        graph: DependencyGraph,
        hub=None,
    ) -> None:
        self._stores = stores
        self._graph = graph
        self._hub = hub
        self.task_locks = graph.task_locks

    async def transition(
        self,
        task_id: str,
        to_status: TaskStatus,
        actor_type: ActorType,
        *,
        actor_id: str | None = None,
        reason: str | None = None,
        project_id: str | None = None,
        expected_version: int | None = None,
        **options: Any,
    ) -> Task:
        """获取任务锁后执行流转，参数见 apply_transition"""
        async with self.task_locks.hold(task_id):
            return await self.apply_transition(
                task_id,
                to_status,
                actor_type,
                actor_id=actor_id,
                reason=reason,
                project_id=project_id,
                expected_version=expected_version,
                **options,
            )

    async def apply_transition(
        self,
        task_id: str,
        to_status: TaskStatus,
        actor_type: ActorType,
        *,
        actor_id: str | None = None,
        reason: str | None = None,
        project_id: str | None = None,
        expected_version: int | None = None,
        **options: Any,
    ) -> Task:
        """执行一次状态流转（调用方必须已持有该任务的锁）

        Args:
            task_id: 任务 ID
            to_status: 目标状态
            actor_type: 操作者类型
            actor_id: 操作者标识
            reason: 流转原因，写入事件
            project_id: 非 None 时校验任务归属
            expected_version: 非 None 时做乐观并发检查
            **options: output_summary / output_branch / output_pr_url /
                error_message / workspace_id / agent_session_id

        Returns:
            流转后的 Task（含最新 blocked）

        Raises:
            TaskNotFoundError / ConflictError / IllegalTransitionError /
            TaskBlockedError / ValidationError
        """
        task = await self.get_task(task_id, project_id)
        if expected_version is not None and expected_version != task.version:
            raise ConflictError(task_id)

        from_status = task.status
        if not validate_transition(from_status, to_status):
            raise IllegalTransitionError(from_status, to_status)

        if to_status == TaskStatus.DELEGATED and not options.get("workspace_id"):
            raise ValidationError("Delegation requires a workspace; use delegate instead")

        if to_status in (TaskStatus.QUEUED, TaskStatus.DELEGATED):
            if await self._graph.is_blocked(task_id):
                raise TaskBlockedError(task_id)

        fields = transition_fields(task, to_status, datetime.now(UTC), **options)
        event = await update_task_and_append_event(
            self._stores,
            task_id,
            task.version,
            fields,
            build_event(
                task_id,
                EventType.STATE_TRANSITION,
                from_status,
                to_status,
                actor_type,
                actor_id,
                reason,
            ),
        )

        log.info(
            "task_status_changed",
            task_id=task_id,
            project_id=task.project_id,
            from_status=from_status.value,
            to_status=to_status.value,
            actor_type=actor_type.value,
        )
        if self._hub is not None and event is not None:
            await self._hub.broadcast(task_id, event)
        await self._graph.on_status_changed(task_id)

        updated = await self.get_task(task_id)
        updated.blocked = await self._graph.is_blocked(task_id)
        return updated

    async def record_attempt(
        self,
        task_id: str,
        reason: str,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
    ) -> TaskStatusEvent:
        """记录一次失败的委派/开机尝试：状态不变，仅追加 DELEGATION_FAILED 事件"""
        task = await self.get_task(task_id)
        event = await append_event_only(
            self._stores,
            build_event(
                task_id,
                EventType.DELEGATION_FAILED,
                task.status,
                task.status,
                actor_type,
                actor_id,
                reason,
            ),
            task_id,
        )
        log.warning(
            "delegation_attempt_failed",
            task_id=task_id,
            status=task.status.value,
            reason=reason,
        )
        if self._hub is not None:
            await self._hub.broadcast(task_id, event)
        return event

    async def list_tasks_in_states(self, statuses: set[TaskStatus]) -> list[Task]:
        return await self._stores.task_store.list_tasks_in_states(statuses)

    async def get_task(self, task_id: str, project_id: str | None = None) -> Task:
        task = await self._stores.task_store.get_task(task_id)
        if task is None or (project_id is not None and task.project_id != project_id):
            raise TaskNotFoundError(task_id)
        return task
