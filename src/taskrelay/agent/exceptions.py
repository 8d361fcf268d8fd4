"""外部 Agent / Workspace 调用异常

两者都属于 DelegationError：任务保持尝试前的状态，错误写入事件日志。
"""

from ..core.errors import DelegationError


class ProvisionError(DelegationError):
    """Workspace 开机失败或未能就绪"""

    code = "PROVISION_FAILED"
    status_code = 502

    def __init__(self, message: str, workspace_id: str | None = None) -> None:
        super().__init__(message, recoverable=True)
        self.workspace_id = workspace_id


class SubmitError(DelegationError):
    """向 workspace 内的 agent 提交任务失败（连接失败、超时、对端拒绝）"""

    code = "SUBMIT_FAILED"
    status_code = 502

    def __init__(self, workspace_id: str, reason: str) -> None:
        super().__init__(f"Agent submission to {workspace_id} failed: {reason}", recoverable=True)
        self.workspace_id = workspace_id
        self.reason = reason
