"""DependencyStore SQLite 实现

task_dependencies 表保存有向边 (task_id, depends_on_task_id)：
task_id 必须等待 depends_on_task_id 完成。无环性由依赖图在插入前校验。
"""

from datetime import datetime

import aiosqlite

from ..models.task import TaskDependency


class SqliteDependencyStore:
    """DependencyStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def add_dependency(self, dependency: TaskDependency) -> None:
        """插入依赖边（重复边触发 IntegrityError）"""
        await self._conn.execute(
            """
            INSERT INTO task_dependencies (task_id, depends_on_task_id, created_at)
            VALUES (?, ?, ?)
            """,
            (
                dependency.task_id,
                dependency.depends_on_task_id,
                dependency.created_at.isoformat(),
            ),
        )

    async def remove_dependency(self, task_id: str, depends_on_task_id: str) -> bool:
        """删除依赖边，返回是否实际删除了一条边"""
        cursor = await self._conn.execute(
            "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
            (task_id, depends_on_task_id),
        )
        return cursor.rowcount > 0

    async def delete_edges_for_task(self, task_id: str) -> int:
        """删除以该任务为任一端点的所有依赖边"""
        cursor = await self._conn.execute(
            "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_task_id = ?",
            (task_id, task_id),
        )
        return cursor.rowcount

    async def get_dependency(
        self, task_id: str, depends_on_task_id: str
    ) -> TaskDependency | None:
        cursor = await self._conn.execute(
            """
            SELECT task_id, depends_on_task_id, created_at FROM task_dependencies
            WHERE task_id = ? AND depends_on_task_id = ?
            """,
            (task_id, depends_on_task_id),
        )
        row = await cursor.fetchone()
        return self._row_to_dependency(row) if row else None

    async def list_dependencies(self, task_id: str) -> list[TaskDependency]:
        """查询任务的出边（它依赖的任务），按创建时间正序"""
        cursor = await self._conn.execute(
            """
            SELECT task_id, depends_on_task_id, created_at FROM task_dependencies
            WHERE task_id = ? ORDER BY created_at ASC, depends_on_task_id ASC
            """,
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_dependency(row) for row in rows]

    async def list_dependencies_for_tasks(
        self, task_ids: list[str]
    ) -> list[tuple[str, str]]:
        """批量查询多个任务的出边，返回 (task_id, depends_on_task_id) 列表"""
        if not task_ids:
            return []
        placeholders = ", ".join("?" for _ in task_ids)
        cursor = await self._conn.execute(
            f"""
            SELECT task_id, depends_on_task_id FROM task_dependencies
            WHERE task_id IN ({placeholders})
            """,
            tuple(task_ids),
        )
        rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def list_dependents(self, task_id: str) -> list[str]:
        """查询依赖此任务的任务 ID（入边来源）"""
        cursor = await self._conn.execute(
            "SELECT task_id FROM task_dependencies WHERE depends_on_task_id = ? ORDER BY task_id",
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def list_project_edges(self, project_id: str) -> list[tuple[str, str]]:
        """查询项目内所有依赖边（用于环检测）"""
        cursor = await self._conn.execute(
            """
            SELECT d.task_id, d.depends_on_task_id
            FROM task_dependencies d
            JOIN tasks t ON t.task_id = d.task_id
            WHERE t.project_id = ?
            """,
            (project_id,),
        )
        rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def count_dependencies(self, task_id: str) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM task_dependencies WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    @staticmethod
    def _row_to_dependency(row: aiosqlite.Row) -> TaskDependency:
        return TaskDependency(
            task_id=row[0],
            depends_on_task_id=row[1],
            created_at=datetime.fromisoformat(row[2]),
        )
