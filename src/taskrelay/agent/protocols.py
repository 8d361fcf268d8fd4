"""外部能力接口 -- 核心只依赖这些窄接口，传输与虚机细节由实现方负责

实现方负责自身的超时与重试；核心额外加一层超时保护，不会无限等待。
"""

from collections.abc import AsyncIterator
from typing import Protocol

from .models import AgentSignal, TaskPayload


class WorkspaceProvisioner(Protocol):
    """Workspace 开机接口"""

    async def launch(
        self,
        project_id: str,
        branch_hint: str | None = None,
        size_hint: str | None = None,
    ) -> str:
        """请求开机，返回 workspace_id（此时尚未就绪）

        Raises:
            ProvisionError: 开机请求被拒绝
        """
        ...

    async def wait_ready(self, workspace_id: str) -> None:
        """等待 workspace 就绪

        Raises:
            ProvisionError: 开机失败或超时
        """
        ...


class AgentSessionClient(Protocol):
    """Workspace 内 agent 会话接口"""

    async def submit(self, workspace_id: str, payload: TaskPayload) -> str:
        """提交任务，返回 session_id

        Raises:
            SubmitError: 提交失败
        """
        ...

    async def stop(self, workspace_id: str, session_id: str) -> None:
        """尽力停止会话，不保证对端确认"""
        ...

    def watch(self, workspace_id: str, session_id: str) -> AsyncIterator[AgentSignal]:
        """订阅会话信号流；流结束表示会话不再上报"""
        ...
