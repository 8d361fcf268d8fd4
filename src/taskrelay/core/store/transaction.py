"""任务写入 + 事件追加的原子事务封装

在同一 SQLite 事务内提交任务修改和状态事件，所有写事务在
StoreGroup.write_lock 下串行执行，避免共享连接上的事务交错。
"""

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ..errors import ConflictError
from ..models.event import TaskStatusEvent
from ..models.task import Task, TaskDependency

if TYPE_CHECKING:
    from . import StoreGroup

EventBuilder = Callable[[int], TaskStatusEvent]


async def create_task_with_initial_events(
    stores: "StoreGroup",
    task: Task,
    dependencies: list[TaskDependency],
    event_builder: EventBuilder,
) -> TaskStatusEvent:
    """单事务写入 task + 初始依赖边 + 创建事件

    Returns:
        写入的创建事件
    """
    async with stores.write_lock:
        try:
            await stores.task_store.create_task(task)
            for dependency in dependencies:
                await stores.dependency_store.add_dependency(dependency)
            event = event_builder(await stores.event_store.get_next_task_seq(task.task_id))
            await stores.event_store.append_event(event)
            await stores.conn.commit()
        except Exception:
            await stores.conn.rollback()
            raise
    return event


async def update_task_and_append_event(
    stores: "StoreGroup",
    task_id: str,
    expected_version: int,
    fields: dict[str, Any],
    event_builder: EventBuilder | None = None,
) -> TaskStatusEvent | None:
    """在同一事务内原子提交任务字段更新和事件写入

    Args:
        stores: Store 实例组
        task_id: 任务 ID
        expected_version: 调用方读取时的版本号
        fields: 需要更新的列
        event_builder: 根据 task_seq 构建事件；None 表示仅更新字段

    Raises:
        ConflictError: 版本不匹配，事务已回滚
    """
    async with stores.write_lock:
        try:
            updated = await stores.task_store.update_task(task_id, expected_version, fields)
            if not updated:
                raise ConflictError(task_id)
            event = None
            if event_builder is not None:
                event = event_builder(await stores.event_store.get_next_task_seq(task_id))
                await stores.event_store.append_event(event)
            await stores.conn.commit()
        except Exception:
            await stores.conn.rollback()
            raise
    return event


async def append_event_only(
    stores: "StoreGroup",
    event_builder: EventBuilder,
    task_id: str,
) -> TaskStatusEvent:
    """仅写入事件（不改变任务任何字段）"""
    async with stores.write_lock:
        try:
            event = event_builder(await stores.event_store.get_next_task_seq(task_id))
            await stores.event_store.append_event(event)
            await stores.conn.commit()
        except Exception:
            await stores.conn.rollback()
            raise
    return event


async def delete_task_with_edges(stores: "StoreGroup", task_id: str) -> int:
    """单事务删除任务及其两端的依赖边（事件保留）

    Returns:
        删除的依赖边数量
    """
    async with stores.write_lock:
        try:
            removed = await stores.dependency_store.delete_edges_for_task(task_id)
            await stores.task_store.delete_task(task_id)
            await stores.conn.commit()
        except Exception:
            await stores.conn.rollback()
            raise
    return removed


async def insert_dependency(stores: "StoreGroup", dependency: TaskDependency) -> None:
    """单事务插入依赖边"""
    async with stores.write_lock:
        try:
            await stores.dependency_store.add_dependency(dependency)
            await stores.conn.commit()
        except Exception:
            await stores.conn.rollback()
            raise


async def remove_dependency(
    stores: "StoreGroup", task_id: str, depends_on_task_id: str
) -> bool:
    """单事务删除依赖边"""
    async with stores.write_lock:
        try:
            removed = await stores.dependency_store.remove_dependency(
                task_id, depends_on_task_id
            )
            await stores.conn.commit()
        except Exception:
            await stores.conn.rollback()
            raise
    return removed
