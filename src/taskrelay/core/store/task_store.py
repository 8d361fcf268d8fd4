"""TaskStore SQLite 实现

tasks 表保存任务当前值；status 只允许经由状态机（transaction 模块）更新，
此处仅提供数据库操作，不自动提交事务。
"""

import base64
import json
from datetime import datetime
from enum import Enum
from typing import Any

import aiosqlite

from ..models.enums import ACTIVE_STATES, TaskSortOrder, TaskStatus
from ..models.task import Task

_TASK_COLUMNS = (
    "task_id",
    "project_id",
    "title",
    "description",
    "status",
    "priority",
    "parent_task_id",
    "agent_profile_hint",
    "workspace_id",
    "agent_session_id",
    "output_summary",
    "output_branch",
    "output_pr_url",
    "error_message",
    "version",
    "created_at",
    "updated_at",
    "started_at",
    "completed_at",
)

_DATETIME_COLUMNS = {"created_at", "updated_at", "started_at", "completed_at"}

# 可通过 update_task 修改的列（task_id / project_id / created_at 不可变，version 自增）
_MUTABLE_COLUMNS = set(_TASK_COLUMNS) - {"task_id", "project_id", "created_at", "version"}

_SELECT = f"SELECT {', '.join(_TASK_COLUMNS)} FROM tasks"

# 排序键全部倒序，最后一列都是 task_id（唯一），保证翻页键全序。
# task_id 为 ULID（毫秒级时间有序），created_at 排序直接用 task_id。
_SORT_KEYS = {
    TaskSortOrder.CREATED_AT_DESC: ("task_id",),
    TaskSortOrder.UPDATED_AT_DESC: ("updated_at", "task_id"),
    TaskSortOrder.PRIORITY_DESC: ("priority", "updated_at", "task_id"),
}


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def encode_cursor(sort: TaskSortOrder, task: Task) -> str:
    """由当前页最后一条任务生成翻页游标

    created_at 排序的游标就是 task_id；其余排序把完整排序键编码为
    urlsafe base64 的 JSON 数组。
    """
    keys = _SORT_KEYS[sort]
    if keys == ("task_id",):
        return task.task_id
    values = [_to_db(getattr(task, key)) for key in keys]
    raw = json.dumps(values, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(sort: TaskSortOrder, cursor: str) -> list[Any]:
    """解析游标为排序键取值列表

    Raises:
        ValueError: 游标格式错误或与排序方式不匹配
    """
    keys = _SORT_KEYS[sort]
    if keys == ("task_id",):
        return [cursor]
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        values = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (ValueError, TypeError) as e:
        raise ValueError(f"malformed cursor: {cursor!r}") from e
    if (
        not isinstance(values, list)
        or len(values) != len(keys)
        or not all(isinstance(v, str | int) for v in values)
    ):
        raise ValueError(f"cursor does not match sort order {sort.value}")
    return values


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        values = task.model_dump(include=set(_TASK_COLUMNS))
        placeholders = ", ".join("?" for _ in _TASK_COLUMNS)
        await self._conn.execute(
            f"INSERT INTO tasks ({', '.join(_TASK_COLUMNS)}) VALUES ({placeholders})",
            tuple(_to_db(values[col]) for col in _TASK_COLUMNS),
        )

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(f"{_SELECT} WHERE task_id = ?", (task_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def get_status_map(self, task_ids: list[str]) -> dict[str, TaskStatus]:
        """批量查询任务状态：task_id -> status（不存在的 id 不出现在结果中）"""
        if not task_ids:
            return {}
        placeholders = ", ".join("?" for _ in task_ids)
        cursor = await self._conn.execute(
            f"SELECT task_id, status FROM tasks WHERE task_id IN ({placeholders})",
            tuple(task_ids),
        )
        rows = await cursor.fetchall()
        return {row[0]: TaskStatus(row[1]) for row in rows}

    async def list_tasks(
        self,
        project_id: str,
        status: TaskStatus | None = None,
        min_priority: int | None = None,
        sort: TaskSortOrder = TaskSortOrder.CREATED_AT_DESC,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> list[Task]:
        """查询项目内任务列表

        Args:
            project_id: 项目 ID
            status: 按状态筛选
            min_priority: 仅返回 priority >= min_priority 的任务
            sort: 排序方式
            limit: 最多返回条数，None 表示不限制
            cursor: encode_cursor 生成的翻页游标，仅返回排在其后的任务

        Raises:
            ValueError: 游标无法解析
        """
        conditions = ["project_id = ?"]
        params: list[Any] = [project_id]
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if min_priority is not None:
            conditions.append("priority >= ?")
            params.append(min_priority)
        keys = _SORT_KEYS[sort]
        if cursor:
            # 行值比较：全部列倒序，按字典序取严格在游标之后的行
            columns = ", ".join(keys)
            placeholders = ", ".join("?" for _ in keys)
            conditions.append(f"({columns}) < ({placeholders})")
            params.extend(decode_cursor(sort, cursor))

        order_by = ", ".join(f"{key} DESC" for key in keys)
        sql = f"{_SELECT} WHERE {' AND '.join(conditions)} ORDER BY {order_by}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        db_cursor = await self._conn.execute(sql, tuple(params))
        rows = await db_cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_all_tasks(self) -> list[Task]:
        """查询所有任务（用于 projection 校验）"""
        cursor = await self._conn.execute(f"{_SELECT} ORDER BY task_id")
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks_in_states(self, statuses: set[TaskStatus]) -> list[Task]:
        """跨项目查询处于给定状态的任务，最久未更新的在前"""
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        cursor = await self._conn.execute(
            f"{_SELECT} WHERE status IN ({placeholders}) ORDER BY updated_at ASC, task_id ASC",
            tuple(s.value for s in statuses),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def count_tasks(self, project_id: str) -> int:
        """统计项目内任务数"""
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE project_id = ?",
            (project_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def find_active_task_for_workspace(self, workspace_id: str) -> Task | None:
        """查询当前绑定在 workspace 上、处于活跃状态的任务"""
        placeholders = ", ".join("?" for _ in ACTIVE_STATES)
        cursor = await self._conn.execute(
            f"{_SELECT} WHERE workspace_id = ? AND status IN ({placeholders}) LIMIT 1",
            (workspace_id, *(s.value for s in ACTIVE_STATES)),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def update_task(
        self,
        task_id: str,
        expected_version: int,
        fields: dict[str, Any],
    ) -> bool:
        """带版本检查的字段更新，version 自增

        Returns:
            False 表示版本不匹配（并发修改），未写入任何数据
        """
        unknown = set(fields) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"immutable or unknown task columns: {sorted(unknown)}")

        assignments = [f"{col} = ?" for col in fields]
        assignments.append("version = version + 1")
        cursor = await self._conn.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE task_id = ? AND version = ?",
            (*(_to_db(v) for v in fields.values()), task_id, expected_version),
        )
        return cursor.rowcount == 1

    async def delete_task(self, task_id: str) -> None:
        """删除任务记录（依赖边需由调用方在同一事务内先行删除）"""
        await self._conn.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        data = dict(zip(_TASK_COLUMNS, tuple(row), strict=True))
        for col in _DATETIME_COLUMNS:
            if data[col] is not None:
                data[col] = datetime.fromisoformat(data[col])
        data["status"] = TaskStatus(data["status"])
        return Task(**data)
