"""SQLite 数据库初始化

PRAGMA 配置 + 三张表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# tasks 表 DDL
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id             TEXT PRIMARY KEY,
    project_id          TEXT NOT NULL,
    title               TEXT NOT NULL,
    description         TEXT,
    status              TEXT NOT NULL DEFAULT 'draft',
    priority            INTEGER NOT NULL DEFAULT 0,
    parent_task_id      TEXT,
    agent_profile_hint  TEXT,
    workspace_id        TEXT,
    agent_session_id    TEXT,
    output_summary      TEXT,
    output_branch       TEXT,
    output_pr_url       TEXT,
    error_message       TEXT,
    version             INTEGER NOT NULL DEFAULT 1,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL,
    started_at          TEXT,
    completed_at        TEXT
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_project_status ON tasks(project_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_project_created ON tasks(project_id, created_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_workspace_status ON tasks(workspace_id, status);",
]

# task_dependencies 表 DDL（删除任务时由事务显式清理两端的边）
_DEPENDENCIES_DDL = """
CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id             TEXT NOT NULL,
    depends_on_task_id  TEXT NOT NULL,
    created_at          TEXT NOT NULL,

    PRIMARY KEY (task_id, depends_on_task_id),
    FOREIGN KEY (task_id) REFERENCES tasks(task_id),
    FOREIGN KEY (depends_on_task_id) REFERENCES tasks(task_id)
);
"""

_DEPENDENCIES_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_deps_depends_on ON task_dependencies(depends_on_task_id);",
]

# task_status_events 表 DDL -- append-only，不引用 tasks，任务删除后审计记录仍在
_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS task_status_events (
    event_id     TEXT PRIMARY KEY,
    task_id      TEXT NOT NULL,
    task_seq     INTEGER NOT NULL,
    type         TEXT NOT NULL,
    from_status  TEXT,
    to_status    TEXT NOT NULL,
    actor_type   TEXT NOT NULL,
    actor_id     TEXT,
    reason       TEXT,
    created_at   TEXT NOT NULL
);
"""

_EVENTS_INDEXES = [
    # 任务内事件序号唯一约束（确保 task_seq 严格单调递增）
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_task_seq "
    "ON task_status_events(task_id, task_seq);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    await conn.execute(_TASKS_DDL)
    await conn.execute(_DEPENDENCIES_DDL)
    await conn.execute(_EVENTS_DDL)

    for idx_sql in _TASKS_INDEXES + _DEPENDENCIES_INDEXES + _EVENTS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
