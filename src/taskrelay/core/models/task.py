"""Task Domain Model

tasks 表只保存可变字段的当前值；status 只能经由状态机修改，
每次修改都在同一事务内追加一条 TaskStatusEvent。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import TaskStatus


class Task(BaseModel):
    """Task 数据模型

    blocked 是派生字段：由依赖图在读取时计算，从不落库。
    """

    task_id: str = Field(description="唯一标识，ULID 格式，不可变")
    project_id: str = Field(description="所属项目，任务不会跨项目移动")
    title: str = Field(description="任务标题")
    description: str | None = Field(default=None, description="任务描述")
    status: TaskStatus = Field(default=TaskStatus.DRAFT, description="当前状态")
    priority: int = Field(default=0, description="优先级，仅用于排序")
    parent_task_id: str | None = Field(default=None, description="父任务（组织用树结构）")
    agent_profile_hint: str | None = Field(
        default=None,
        description="透传给 agent 的 profile 提示，核心不解析",
    )
    workspace_id: str | None = Field(default=None, description="绑定的 workspace")
    agent_session_id: str | None = Field(default=None, description="绑定的 agent 会话")
    output_summary: str | None = Field(default=None)
    output_branch: str | None = Field(default=None)
    output_pr_url: str | None = Field(default=None)
    error_message: str | None = Field(default=None)
    blocked: bool = Field(default=False, description="派生：存在未完成的依赖")
    version: int = Field(default=1, description="乐观并发版本号，每次修改 +1")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)


class TaskDependency(BaseModel):
    """依赖边：task_id 必须等 depends_on_task_id 完成"""

    task_id: str
    depends_on_task_id: str
    created_at: datetime


class TaskDetail(BaseModel):
    """任务详情：任务本体 + 已解析的依赖列表"""

    task: Task
    dependencies: list[TaskDependency] = Field(default_factory=list)


class TaskPage(BaseModel):
    """分页任务列表"""

    tasks: list[Task]
    next_cursor: str | None = None


class BlockedChange(BaseModel):
    """依赖状态变化导致的 blocked 翻转通知"""

    task_id: str
    blocked: bool


class TaskCreate(BaseModel):
    """创建任务的输入"""

    title: str = Field(description="任务标题，去除首尾空白后不能为空")
    description: str | None = None
    priority: int = 0
    parent_task_id: str | None = None
    agent_profile_hint: str | None = None
    depends_on: list[str] = Field(default_factory=list, description="初始依赖的任务 ID")


class TaskUpdate(BaseModel):
    """直接编辑任务字段的输入（仅 draft / ready 状态允许）

    只有显式提供的字段会被修改；parent_task_id 显式传 None 表示解除父任务。
    """

    title: str | None = None
    description: str | None = None
    priority: int | None = None
    parent_task_id: str | None = None
    agent_profile_hint: str | None = None
    expected_version: int | None = Field(default=None, description="乐观并发版本号")
