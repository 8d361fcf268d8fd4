"""EventStore SQLite 实现

事件表 append-only：只允许插入，不允许更新或删除。
task_seq 同一 task 内严格单调递增。
"""

from datetime import datetime

import aiosqlite

from ..models.enums import ActorType, EventType, TaskStatus
from ..models.event import TaskStatusEvent

_EVENT_COLUMNS = (
    "event_id, task_id, task_seq, type, from_status, to_status, "
    "actor_type, actor_id, reason, created_at"
)


class SqliteEventStore:
    """EventStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append_event(self, event: TaskStatusEvent) -> None:
        """追加事件（append-only）

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        await self._conn.execute(
            f"""
            INSERT INTO task_status_events ({_EVENT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.task_id,
                event.task_seq,
                event.type.value,
                event.from_status.value if event.from_status else None,
                event.to_status.value,
                event.actor_type.value,
                event.actor_id,
                event.reason,
                event.created_at.isoformat(),
            ),
        )

    async def get_events_for_task(self, task_id: str) -> list[TaskStatusEvent]:
        """查询指定任务的所有事件，按 task_seq 正序"""
        cursor = await self._conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM task_status_events "
            "WHERE task_id = ? ORDER BY task_seq ASC",
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def list_recent_events(self, task_id: str, limit: int) -> list[TaskStatusEvent]:
        """查询指定任务最近的 limit 条事件，新的在前"""
        cursor = await self._conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM task_status_events "
            "WHERE task_id = ? ORDER BY task_seq DESC LIMIT ?",
            (task_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def get_events_after(
        self,
        task_id: str,
        after_event_id: str,
    ) -> list[TaskStatusEvent]:
        """查询指定事件之后的增量事件（用于 SSE 断线重连）

        按 task_seq 定位：同一毫秒内生成的 ULID 不保证有序。
        after_event_id 不存在时返回全部事件。
        """
        cursor = await self._conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM task_status_events "
            "WHERE task_id = ? AND task_seq > COALESCE("
            "(SELECT task_seq FROM task_status_events WHERE task_id = ? AND event_id = ?), 0"
            ") ORDER BY task_seq ASC",
            (task_id, task_id, after_event_id),
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def get_next_task_seq(self, task_id: str) -> int:
        """获取指定任务的下一个 task_seq（MAX+1）

        在事务内调用以确保原子性。
        """
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(task_seq), 0) FROM task_status_events WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        return (row[0] if row else 0) + 1

    async def get_all_events(self) -> list[TaskStatusEvent]:
        """查询所有事件，按 task_id 和 task_seq 排序（用于 projection 校验）"""
        cursor = await self._conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM task_status_events ORDER BY task_id, task_seq ASC"
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> TaskStatusEvent:
        """将数据库行转换为 TaskStatusEvent 模型"""
        return TaskStatusEvent(
            event_id=row[0],
            task_id=row[1],
            task_seq=row[2],
            type=EventType(row[3]),
            from_status=TaskStatus(row[4]) if row[4] else None,
            to_status=TaskStatus(row[5]),
            actor_type=ActorType(row[6]),
            actor_id=row[7],
            reason=row[8],
            created_at=datetime.fromisoformat(row[9]),
        )
