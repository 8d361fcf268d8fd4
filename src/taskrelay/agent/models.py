"""Agent 交互数据模型"""

from enum import StrEnum

from pydantic import BaseModel, Field


class SignalKind(StrEnum):
    """Agent 会话上报的执行信号"""

    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    WORKSPACE_LOST = "workspace_lost"


class TaskPayload(BaseModel):
    """提交给 workspace 内 agent 的任务描述"""

    task_id: str
    project_id: str
    title: str
    description: str | None = None
    agent_profile_hint: str | None = Field(default=None, description="透传，核心不解析")
    branch_hint: str | None = Field(default=None, description="建议的输出分支名")


class AgentSignal(BaseModel):
    """Agent 会话信号"""

    kind: SignalKind
    note: str | None = Field(default=None, description="progress 附带的说明")
    output_summary: str | None = None
    output_branch: str | None = None
    output_pr_url: str | None = None
    reason: str | None = Field(default=None, description="failed 的原因")
