"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、项目级配额、分页大小、卡住任务判定时长与外部调用超时。
"""

import os
from pathlib import Path

import structlog

log = structlog.get_logger()


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("TASKRELAY_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "TASKRELAY_DB_PATH",
        str(_get_base_dir() / "sqlite" / "taskrelay.db"),
    )


def _positive_int(env_var: str, default: int) -> int:
    """读取正整数环境变量，非法值回退到默认值"""
    raw = os.environ.get(env_var)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        log.warning(
            "invalid_int_config",
            env_var=env_var,
            value=raw,
            fallback=default,
        )
        return default
    return value


def get_max_tasks_per_project() -> int:
    """单个项目允许的最大任务数"""
    return _positive_int("TASKRELAY_MAX_TASKS_PER_PROJECT", 500)


def get_max_dependencies_per_task() -> int:
    """单个任务允许的最大依赖边数"""
    return _positive_int("TASKRELAY_MAX_TASK_DEPENDENCIES_PER_TASK", 25)


def get_default_page_size() -> int:
    """列表查询默认分页大小"""
    return _positive_int("TASKRELAY_TASK_LIST_DEFAULT_PAGE_SIZE", 50)


def get_max_page_size() -> int:
    """列表查询最大分页大小"""
    return _positive_int("TASKRELAY_TASK_LIST_MAX_PAGE_SIZE", 200)


def clamp_page_size(limit: int | None) -> int:
    """将调用方请求的分页大小收敛到 [1, max]，None 或非正数取默认值"""
    if limit is None or limit <= 0:
        limit = get_default_page_size()
    return min(limit, get_max_page_size())


def get_stuck_queued_timeout_s() -> int:
    """queued 任务超过该时长（秒）未被委派视为卡住"""
    return _positive_int("TASKRELAY_TASK_STUCK_QUEUED_TIMEOUT_S", 600)


def get_stuck_delegated_timeout_s() -> int:
    """delegated 任务超过该时长（秒）未收到首个进度信号视为卡住"""
    return _positive_int("TASKRELAY_TASK_STUCK_DELEGATED_TIMEOUT_S", 960)


def get_max_execution_s() -> int:
    """in_progress 任务从开始执行起允许的最长时间（秒）"""
    return _positive_int("TASKRELAY_TASK_MAX_EXECUTION_S", 14400)


# Agent 提交/停止调用的超时保护（秒），核心不会无限等待外部依赖
AGENT_CALL_TIMEOUT_S: float = float(
    os.environ.get("TASKRELAY_AGENT_CALL_TIMEOUT_S", "30")
)

# SSE 心跳间隔（秒）
SSE_HEARTBEAT_INTERVAL: int = int(
    os.environ.get("TASKRELAY_SSE_HEARTBEAT_INTERVAL", "15")
)

# 任务标题最大长度
TITLE_MAX_LENGTH: int = 200
