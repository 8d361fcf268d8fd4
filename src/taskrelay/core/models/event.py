"""TaskStatusEvent Domain Model

事件表 append-only，不允许更新或删除，任务删除后依然保留。
event_id 使用 ULID 格式，时间有序；task_seq 同一 task 内严格单调递增。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import ActorType, EventType, TaskStatus


class TaskStatusEvent(BaseModel):
    """状态事件

    创建事件的 from_status 为 None；DELEGATION_FAILED 事件的
    from_status 与 to_status 相同（状态未变化，仅记录尝试）。
    """

    event_id: str = Field(description="唯一标识，ULID 格式，时间有序")
    task_id: str = Field(description="关联的 Task ID")
    task_seq: int = Field(description="任务内序号，严格单调递增")
    type: EventType = Field(default=EventType.STATE_TRANSITION)
    from_status: TaskStatus | None = Field(default=None)
    to_status: TaskStatus
    actor_type: ActorType
    actor_id: str | None = Field(default=None)
    reason: str | None = Field(default=None)
    created_at: datetime


class ProgressNote(BaseModel):
    """执行中的进度说明，仅推送给订阅者，不落库"""

    task_id: str
    note: str | None = None
    workspace_id: str | None = None
    created_at: datetime
