"""枚举定义

包含 TaskStatus 状态机、EventType、ActorType、TaskSortOrder 枚举，
以及 VALID_TRANSITIONS 合法流转映射和各类状态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 状态机"""

    DRAFT = "draft"
    READY = "ready"
    QUEUED = "queued"
    DELEGATED = "delegated"
    IN_PROGRESS = "in_progress"

    # 终态
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# 合法状态流转（唯一事实来源）
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.DRAFT: {TaskStatus.READY, TaskStatus.CANCELLED},
    TaskStatus.READY: {
        TaskStatus.QUEUED,
        TaskStatus.DELEGATED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.QUEUED: {
        TaskStatus.DELEGATED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.DELEGATED: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.IN_PROGRESS: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    # completed 是绝对终态
    TaskStatus.COMPLETED: set(),
    # failed / cancelled 可以重新进入 ready 发起新一轮尝试
    TaskStatus.FAILED: {TaskStatus.READY, TaskStatus.CANCELLED},
    TaskStatus.CANCELLED: {TaskStatus.READY},
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
}

# 绑定了 workspace 且 agent 正在执行的状态
ACTIVE_STATES: set[TaskStatus] = {
    TaskStatus.DELEGATED,
    TaskStatus.IN_PROGRESS,
}

# 依赖未完成时不允许进入的状态
EXECUTABLE_STATES: set[TaskStatus] = {
    TaskStatus.QUEUED,
    TaskStatus.DELEGATED,
    TaskStatus.IN_PROGRESS,
}

# 可被委派的状态
DELEGABLE_STATES: set[TaskStatus] = {
    TaskStatus.READY,
    TaskStatus.QUEUED,
}

# 允许直接编辑字段（标题/描述/优先级/依赖）的状态
EDITABLE_STATES: set[TaskStatus] = {
    TaskStatus.DRAFT,
    TaskStatus.READY,
}


class EventType(StrEnum):
    """事件类型"""

    TASK_CREATED = "TASK_CREATED"
    STATE_TRANSITION = "STATE_TRANSITION"
    # 委派/开机失败：状态不变，仅留痕
    DELEGATION_FAILED = "DELEGATION_FAILED"


class ActorType(StrEnum):
    """操作者类型"""

    USER = "user"
    SYSTEM = "system"
    WORKSPACE_CALLBACK = "workspace_callback"


class TaskSortOrder(StrEnum):
    """任务列表排序方式"""

    CREATED_AT_DESC = "created_at_desc"
    UPDATED_AT_DESC = "updated_at_desc"
    PRIORITY_DESC = "priority_desc"


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed


def allowed_transitions(from_status: TaskStatus) -> list[TaskStatus]:
    """返回当前状态允许的目标状态（按枚举定义顺序）"""
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return [status for status in TaskStatus if status in allowed]
