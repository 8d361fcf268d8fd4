"""任务依赖图

维护同一项目内任务之间的有向依赖边，保证无环，并计算派生的 blocked 属性。
依赖关系与 parent_task_id（组织树）相互独立，允许菱形依赖和跨分支排序。

边的修改在项目级锁内完成环检测 + 插入；读取 blocked 不加锁，
可能看到略旧的图，blocked 仅用于调度建议。
"""

from collections import defaultdict, deque
from collections.abc import Iterable
from datetime import UTC, datetime

import aiosqlite
import structlog

from .config import get_max_dependencies_per_task
from .errors import (
    CrossProjectError,
    DependencyLimitError,
    DuplicateDependencyError,
    SelfReferenceError,
    TaskNotEditableError,
    TaskNotFoundError,
    WouldCycleError,
)
from .locks import KeyedLocks
from .models.enums import EDITABLE_STATES, TaskStatus
from .models.task import BlockedChange, Task, TaskDependency
from .store import StoreGroup
from .store import transaction

log = structlog.get_logger()


def would_create_cycle(
    task_id: str,
    depends_on_task_id: str,
    edges: Iterable[tuple[str, str]],
) -> bool:
    """判断新增边 task_id -> depends_on_task_id 是否成环

    从 depends_on_task_id 沿依赖方向做 BFS，能到达 task_id 即成环。

    Args:
        task_id: 依赖方
        depends_on_task_id: 被依赖方
        edges: 现有边 (task_id, depends_on_task_id)
    """
    if task_id == depends_on_task_id:
        return True

    adjacency: dict[str, list[str]] = defaultdict(list)
    for source, target in edges:
        adjacency[source].append(target)

    visited = {depends_on_task_id}
    queue = deque([depends_on_task_id])
    while queue:
        current = queue.popleft()
        for nxt in adjacency.get(current, ()):
            if nxt == task_id:
                return True
            if nxt not in visited:
                visited.add(nxt)
                queue.append(nxt)
    return False


def compute_blocked(
    dependency_ids: Iterable[str],
    status_map: dict[str, TaskStatus],
) -> bool:
    """存在任一依赖的状态不是 completed 即为 blocked（失败的依赖同样阻塞）"""
    return any(status_map.get(dep_id) != TaskStatus.COMPLETED for dep_id in dependency_ids)


def blocked_ids(
    task_ids: Iterable[str],
    edges: Iterable[tuple[str, str]],
    status_map: dict[str, TaskStatus],
) -> set[str]:
    """批量计算 blocked 的任务集合"""
    wanted = set(task_ids)
    deps: dict[str, list[str]] = defaultdict(list)
    for source, target in edges:
        if source in wanted:
            deps[source].append(target)
    return {tid for tid, dep_ids in deps.items() if compute_blocked(dep_ids, status_map)}


class DependencyGraph:
    """依赖图服务

    blocked 每次查询实时计算；同时缓存最近一次结果，在依赖状态变化时
    重新计算依赖方的 blocked 并把翻转推送给订阅者。
    task_locks 是任务级锁，由状态机、协调器与执行监控共用。
    """

    def __init__(self, stores: StoreGroup, hub=None) -> None:
        self._stores = stores
        self._hub = hub
        self.task_locks = KeyedLocks()
        self._project_locks = KeyedLocks()
        self._blocked_cache: dict[str, bool] = {}

    async def add_dependency(
        self,
        project_id: str,
        task_id: str,
        depends_on_task_id: str,
    ) -> TaskDependency:
        """新增依赖边 task_id -> depends_on_task_id

        Raises:
            SelfReferenceError / CrossProjectError / WouldCycleError /
            DuplicateDependencyError / DependencyLimitError /
            TaskNotEditableError / TaskNotFoundError
        """
        if task_id == depends_on_task_id:
            raise SelfReferenceError(task_id)

        # 任务锁 -> 项目锁，与删除任务同序；状态必须在锁内读取
        async with self.task_locks.hold(task_id):
            async with self._project_locks.hold(project_id):
                task = await self._require_task(project_id, task_id)
                if task.status not in EDITABLE_STATES:
                    raise TaskNotEditableError(
                        task_id, task.status, action="change dependencies of"
                    )

                dependency_task = await self._stores.task_store.get_task(depends_on_task_id)
                if dependency_task is None:
                    raise TaskNotFoundError(depends_on_task_id)
                if dependency_task.project_id != project_id:
                    raise CrossProjectError(task_id, depends_on_task_id)

                store = self._stores.dependency_store
                if await store.get_dependency(task_id, depends_on_task_id) is not None:
                    raise DuplicateDependencyError(task_id, depends_on_task_id)

                limit = get_max_dependencies_per_task()
                if await store.count_dependencies(task_id) >= limit:
                    raise DependencyLimitError(task_id, limit)

                edges = await store.list_project_edges(project_id)
                if would_create_cycle(task_id, depends_on_task_id, edges):
                    log.info(
                        "dependency_cycle_rejected",
                        project_id=project_id,
                        task_id=task_id,
                        depends_on_task_id=depends_on_task_id,
                    )
                    raise WouldCycleError(task_id, depends_on_task_id)

                dependency = TaskDependency(
                    task_id=task_id,
                    depends_on_task_id=depends_on_task_id,
                    created_at=datetime.now(UTC),
                )
                try:
                    await transaction.insert_dependency(self._stores, dependency)
                except aiosqlite.IntegrityError as e:
                    raise DuplicateDependencyError(task_id, depends_on_task_id) from e

            log.info(
                "dependency_added",
                project_id=project_id,
                task_id=task_id,
                depends_on_task_id=depends_on_task_id,
            )
            await self._refresh(task_id)
        return dependency

    async def remove_dependency(
        self,
        project_id: str,
        task_id: str,
        depends_on_task_id: str,
    ) -> bool:
        """删除依赖边（无条件），返回是否删除了已存在的边"""
        async with self.task_locks.hold(task_id):
            async with self._project_locks.hold(project_id):
                await self._require_task(project_id, task_id)
                removed = await transaction.remove_dependency(
                    self._stores, task_id, depends_on_task_id
                )
            if removed:
                log.info(
                    "dependency_removed",
                    project_id=project_id,
                    task_id=task_id,
                    depends_on_task_id=depends_on_task_id,
                )
                await self._refresh(task_id)
        return removed

    async def validate_initial_dependencies(
        self,
        project_id: str,
        depends_on_task_ids: list[str],
        task_id: str | None = None,
    ) -> list[str]:
        """校验新任务声明的依赖（新任务没有入边，不可能成环）

        Returns:
            去重后的依赖 ID 列表（保持原顺序）
        """
        unique_ids = list(dict.fromkeys(depends_on_task_ids))
        limit = get_max_dependencies_per_task()
        if len(unique_ids) > limit:
            raise DependencyLimitError(task_id or "new task", limit)
        for dep_id in unique_ids:
            if task_id is not None and dep_id == task_id:
                raise SelfReferenceError(task_id)
            dependency_task = await self._stores.task_store.get_task(dep_id)
            if dependency_task is None:
                raise TaskNotFoundError(dep_id)
            if dependency_task.project_id != project_id:
                raise CrossProjectError(task_id or "new task", dep_id)
        return unique_ids

    async def is_blocked(self, task_id: str) -> bool:
        """实时计算 blocked，并更新缓存"""
        dependencies = await self._stores.dependency_store.list_dependencies(task_id)
        dep_ids = [d.depends_on_task_id for d in dependencies]
        status_map = await self._stores.task_store.get_status_map(dep_ids)
        blocked = compute_blocked(dep_ids, status_map)
        self._blocked_cache[task_id] = blocked
        return blocked

    async def blocked_task_ids(self, task_ids: list[str]) -> set[str]:
        """批量计算 blocked（列表查询使用）"""
        edges = await self._stores.dependency_store.list_dependencies_for_tasks(task_ids)
        status_map = await self._stores.task_store.get_status_map(
            list({target for _, target in edges})
        )
        result = blocked_ids(task_ids, edges, status_map)
        for tid in task_ids:
            self._blocked_cache[tid] = tid in result
        return result

    def cached_blocked(self, task_id: str) -> bool | None:
        """最近一次计算的 blocked 值，未计算过返回 None"""
        return self._blocked_cache.get(task_id)

    async def on_status_changed(self, task_id: str) -> list[BlockedChange]:
        """依赖状态变化后重新计算所有依赖方的 blocked，推送发生翻转的结果"""
        changes: list[BlockedChange] = []
        for dependent_id in await self._stores.dependency_store.list_dependents(task_id):
            change = await self._refresh(dependent_id)
            if change is not None:
                changes.append(change)
        return changes

    def edge_lock(self, project_id: str):
        """项目级边修改锁（删除任务时与加边互斥）"""
        return self._project_locks.hold(project_id)

    def forget(self, task_id: str) -> None:
        """任务删除后清理缓存"""
        self._blocked_cache.pop(task_id, None)

    async def _refresh(self, task_id: str) -> BlockedChange | None:
        previous = self._blocked_cache.get(task_id)
        blocked = await self.is_blocked(task_id)
        if previous == blocked:
            return None
        change = BlockedChange(task_id=task_id, blocked=blocked)
        log.debug("task_blocked_changed", task_id=task_id, blocked=blocked)
        if self._hub is not None:
            await self._hub.broadcast(task_id, change)
        return change

    async def _require_task(self, project_id: str, task_id: str) -> Task:
        task = await self._stores.task_store.get_task(task_id)
        if task is None or task.project_id != project_id:
            raise TaskNotFoundError(task_id)
        return task
