"""taskrelay Core Domain Models -- 公共类型导出"""

from .enums import (
    ACTIVE_STATES,
    DELEGABLE_STATES,
    EDITABLE_STATES,
    EXECUTABLE_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ActorType,
    EventType,
    TaskSortOrder,
    TaskStatus,
    allowed_transitions,
    validate_transition,
)
from .event import ProgressNote, TaskStatusEvent
from .task import (
    BlockedChange,
    Task,
    TaskCreate,
    TaskDependency,
    TaskDetail,
    TaskPage,
    TaskUpdate,
)

__all__ = [
    # 枚举
    "TaskStatus",
    "EventType",
    "ActorType",
    "TaskSortOrder",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "ACTIVE_STATES",
    "EXECUTABLE_STATES",
    "DELEGABLE_STATES",
    "EDITABLE_STATES",
    "validate_transition",
    "allowed_transitions",
    # Task
    "Task",
    "TaskCreate",
    "TaskUpdate",
    "TaskDependency",
    "TaskDetail",
    "TaskPage",
    "BlockedChange",
    # Event
    "TaskStatusEvent",
    "ProgressNote",
]
