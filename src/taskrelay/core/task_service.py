"""TaskService -- 任务增删改查、状态流转与事件查询入口

所有调用都显式携带 project_id，核心不依赖任何“当前项目”全局状态。
状态修改一律委托给 TaskStateMachine，依赖边修改委托给 DependencyGraph。
"""

from datetime import UTC, datetime

import structlog
from ulid import ULID

from .config import TITLE_MAX_LENGTH, clamp_page_size, get_max_tasks_per_project
from .errors import (
    ConflictError,
    TaskHasActiveDependentsError,
    TaskLimitError,
    TaskNotEditableError,
    TaskNotFoundError,
    ValidationError,
)
from .graph import DependencyGraph
from .models.enums import (
    ACTIVE_STATES,
    EDITABLE_STATES,
    TERMINAL_STATES,
    ActorType,
    EventType,
    TaskSortOrder,
    TaskStatus,
)
from .models.event import TaskStatusEvent
from .models.task import (
    Task,
    TaskCreate,
    TaskDependency,
    TaskDetail,
    TaskPage,
    TaskUpdate,
)
from .state_machine import TaskStateMachine, build_event
from .store import StoreGroup
from .store.task_store import encode_cursor
from .store.transaction import (
    create_task_with_initial_events,
    delete_task_with_edges,
    update_task_and_append_event,
)

log = structlog.get_logger()


def _normalize_title(title: str | None) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationError("title is required")
    if len(cleaned) > TITLE_MAX_LENGTH:
        raise ValidationError(f"title must be at most {TITLE_MAX_LENGTH} characters")
    return cleaned


def _optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class TaskService:
    """任务业务服务"""

    def __init__(
        self,
        stores: StoreGroup,
        graph: DependencyGraph,
        state_machine: TaskStateMachine,
        monitor=None,
        hub=None,
    ) -> None:
        self._stores = stores
        self._graph = graph
        self._state_machine = state_machine
        self._monitor = monitor
        self._hub = hub

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_task(
        self,
        project_id: str,
        data: TaskCreate,
        actor_id: str | None = None,
    ) -> Task:
        """创建 draft 任务，同时写入初始依赖边与创建事件

        依赖、父任务、配额全部校验通过后才落库，不会部分生效。
        """
        title = _normalize_title(data.title)

        limit = get_max_tasks_per_project()
        if await self._stores.task_store.count_tasks(project_id) >= limit:
            raise TaskLimitError(f"Maximum {limit} tasks allowed per project")

        parent_task_id = None
        if data.parent_task_id:
            parent = await self._stores.task_store.get_task(data.parent_task_id)
            if parent is None:
                raise TaskNotFoundError(data.parent_task_id)
            if parent.project_id != project_id:
                raise ValidationError("parent_task_id must reference a task in the same project")
            parent_task_id = parent.task_id

        depends_on = await self._graph.validate_initial_dependencies(project_id, data.depends_on)

        now = datetime.now(UTC)
        task_id = str(ULID())
        task = Task(
            task_id=task_id,
            project_id=project_id,
            title=title,
            description=_optional_text(data.description),
            status=TaskStatus.DRAFT,
            priority=data.priority,
            parent_task_id=parent_task_id,
            agent_profile_hint=_optional_text(data.agent_profile_hint),
            created_at=now,
            updated_at=now,
        )
        dependencies = [
            TaskDependency(task_id=task_id, depends_on_task_id=dep_id, created_at=now)
            for dep_id in depends_on
        ]

        event = await create_task_with_initial_events(
            self._stores,
            task,
            dependencies,
            build_event(
                task_id,
                EventType.TASK_CREATED,
                None,
                TaskStatus.DRAFT,
                ActorType.USER,
                actor_id,
                "Task created",
            ),
        )
        log.info(
            "task_created",
            task_id=task_id,
            project_id=project_id,
            dependency_count=len(dependencies),
        )
        if self._hub is not None:
            await self._hub.broadcast(task_id, event)

        task.blocked = await self._graph.is_blocked(task_id)
        return task

    async def get_task(self, project_id: str, task_id: str) -> Task:
        """查询任务（含实时计算的 blocked）"""
        task = await self._require_task(project_id, task_id)
        task.blocked = await self._graph.is_blocked(task_id)
        return task

    async def get_task_detail(self, project_id: str, task_id: str) -> TaskDetail:
        """查询任务详情，包含已解析的依赖列表"""
        task = await self.get_task(project_id, task_id)
        dependencies = await self._stores.dependency_store.list_dependencies(task_id)
        return TaskDetail(task=task, dependencies=dependencies)

    async def list_tasks(
        self,
        project_id: str,
        status: TaskStatus | None = None,
        min_priority: int | None = None,
        sort: TaskSortOrder = TaskSortOrder.CREATED_AT_DESC,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> TaskPage:
        """分页查询任务列表，附带批量计算的 blocked

        游标与排序方式绑定：换排序后需从第一页重新开始。
        """
        page_size = clamp_page_size(limit)
        try:
            rows = await self._stores.task_store.list_tasks(
                project_id,
                status=status,
                min_priority=min_priority,
                sort=sort,
                limit=page_size + 1,
                cursor=cursor,
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e
        has_next = len(rows) > page_size
        tasks = rows[:page_size]
        blocked = await self._graph.blocked_task_ids([t.task_id for t in tasks])
        for task in tasks:
            task.blocked = task.task_id in blocked
        return TaskPage(
            tasks=tasks,
            next_cursor=encode_cursor(sort, tasks[-1]) if has_next and tasks else None,
        )

    async def update_task(
        self,
        project_id: str,
        task_id: str,
        changes: TaskUpdate,
    ) -> Task:
        """直接编辑任务字段（仅 draft / ready）"""
        provided = changes.model_fields_set - {"expected_version"}
        if not provided:
            raise ValidationError("At least one field is required")

        async with self._state_machine.task_locks.hold(task_id):
            task = await self._require_task(project_id, task_id)
            if changes.expected_version is not None and changes.expected_version != task.version:
                raise ConflictError(task_id)
            if task.status not in EDITABLE_STATES:
                raise TaskNotEditableError(task_id, task.status)

            fields: dict = {"updated_at": datetime.now(UTC)}
            if "title" in provided:
                fields["title"] = _normalize_title(changes.title)
            if "description" in provided:
                fields["description"] = _optional_text(changes.description)
            if "priority" in provided:
                if changes.priority is None:
                    raise ValidationError("priority must be an integer")
                fields["priority"] = changes.priority
            if "agent_profile_hint" in provided:
                fields["agent_profile_hint"] = _optional_text(changes.agent_profile_hint)
            if "parent_task_id" in provided:
                fields["parent_task_id"] = await self._validate_parent(
                    project_id, task_id, changes.parent_task_id
                )

            await update_task_and_append_event(self._stores, task_id, task.version, fields)

        log.info("task_updated", task_id=task_id, fields=sorted(provided))
        return await self.get_task(project_id, task_id)

    async def delete_task(self, project_id: str, task_id: str) -> None:
        """删除任务，级联删除两端的依赖边；事件日志保留

        Raises:
            TaskNotEditableError: 任务正在执行（delegated / in_progress）
            TaskHasActiveDependentsError: 仍有非终态任务依赖它
        """
        async with self._state_machine.task_locks.hold(task_id):
            async with self._graph.edge_lock(project_id):
                task = await self._require_task(project_id, task_id)
                if task.status in ACTIVE_STATES:
                    raise TaskNotEditableError(task_id, task.status, action="delete")

                dependent_ids = await self._stores.dependency_store.list_dependents(task_id)
                status_map = await self._stores.task_store.get_status_map(dependent_ids)
                active_dependents = [
                    tid for tid in dependent_ids if status_map.get(tid) not in TERMINAL_STATES
                ]
                if active_dependents:
                    raise TaskHasActiveDependentsError(task_id, active_dependents)

                removed_edges = await delete_task_with_edges(self._stores, task_id)

        self._graph.forget(task_id)
        log.info(
            "task_deleted",
            task_id=task_id,
            project_id=project_id,
            removed_edges=removed_edges,
        )

    # ------------------------------------------------------------------
    # 状态流转 / 依赖 / 事件
    # ------------------------------------------------------------------

    async def transition(
        self,
        project_id: str,
        task_id: str,
        to_status: TaskStatus,
        *,
        reason: str | None = None,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
        expected_version: int | None = None,
        output_summary: str | None = None,
        output_branch: str | None = None,
        output_pr_url: str | None = None,
        error_message: str | None = None,
    ) -> Task:
        """调用方发起的状态流转

        取消统一走执行监控（需要停止外部会话）；其余终态流转若结束了一次
        活跃委派，同样通知执行监控释放 watcher 与会话。
        """
        if to_status == TaskStatus.CANCELLED and self._monitor is not None:
            return await self._monitor.cancel(
                project_id,
                task_id,
                actor_type=actor_type,
                actor_id=actor_id,
                reason=reason,
                expected_version=expected_version,
            )

        async with self._state_machine.task_locks.hold(task_id):
            previous = await self._require_task(project_id, task_id)
            task = await self._state_machine.apply_transition(
                task_id,
                to_status,
                actor_type,
                actor_id=actor_id,
                reason=reason,
                expected_version=expected_version,
                output_summary=output_summary,
                output_branch=output_branch,
                output_pr_url=output_pr_url,
                error_message=error_message,
            )

        if (
            self._monitor is not None
            and previous.status in ACTIVE_STATES
            and to_status in TERMINAL_STATES
        ):
            self._monitor.release(previous, stop_session=to_status != TaskStatus.COMPLETED)
        return task

    async def add_dependency(
        self, project_id: str, task_id: str, depends_on_task_id: str
    ) -> TaskDependency:
        return await self._graph.add_dependency(project_id, task_id, depends_on_task_id)

    async def remove_dependency(
        self, project_id: str, task_id: str, depends_on_task_id: str
    ) -> bool:
        return await self._graph.remove_dependency(project_id, task_id, depends_on_task_id)

    async def is_blocked(self, project_id: str, task_id: str) -> bool:
        await self._require_task(project_id, task_id)
        return await self._graph.is_blocked(task_id)

    async def list_events(
        self,
        project_id: str,
        task_id: str,
        limit: int | None = None,
    ) -> list[TaskStatusEvent]:
        """分页查询任务事件，新的在前"""
        await self._require_task(project_id, task_id)
        return await self._stores.event_store.list_recent_events(
            task_id, clamp_page_size(limit)
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _require_task(self, project_id: str, task_id: str) -> Task:
        task = await self._stores.task_store.get_task(task_id)
        if task is None or task.project_id != project_id:
            raise TaskNotFoundError(task_id)
        return task

    async def _validate_parent(
        self, project_id: str, task_id: str, parent_task_id: str | None
    ) -> str | None:
        if parent_task_id is None:
            return None
        parent_task_id = parent_task_id.strip()
        if not parent_task_id:
            raise ValidationError("parent_task_id cannot be empty")
        if parent_task_id == task_id:
            raise ValidationError("Task cannot be its own parent")

        parent = await self._stores.task_store.get_task(parent_task_id)
        if parent is None:
            raise TaskNotFoundError(parent_task_id)
        if parent.project_id != project_id:
            raise ValidationError("parent_task_id must reference a task in the same project")

        # 沿父链向上，防止组织树成环
        seen = {task_id}
        ancestor = parent
        while ancestor is not None and ancestor.parent_task_id:
            if ancestor.parent_task_id in seen:
                raise ValidationError("parent_task_id would create a parent loop")
            seen.add(ancestor.task_id)
            ancestor = await self._stores.task_store.get_task(ancestor.parent_task_id)
        return parent.task_id
