"""taskrelay.agent -- 外部 workspace / agent 会话适配层

核心只依赖 protocols 中的窄接口；echo 与 http 两种实现由配置选择。
"""

from .config import AgentConfig, load_agent_config
from .echo_adapter import EchoAgentSessionClient, EchoWorkspaceProvisioner
from .exceptions import ProvisionError, SubmitError
from .http_client import HttpAgentSessionClient, HttpWorkspaceProvisioner
from .models import AgentSignal, SignalKind, TaskPayload
from .protocols import AgentSessionClient, WorkspaceProvisioner


def create_agent_adapters(
    config: AgentConfig,
) -> tuple[WorkspaceProvisioner, AgentSessionClient]:
    """按配置构造 (provisioner, session_client)"""
    if config.agent_mode == "http":
        api_key = config.api_key.get_secret_value()
        return (
            HttpWorkspaceProvisioner(
                config.provisioner_base_url,
                api_key=api_key,
                timeout_s=config.timeout_s,
                ready_timeout_s=config.ready_timeout_s,
                poll_interval_s=config.ready_poll_interval_s,
            ),
            HttpAgentSessionClient(
                config.agent_base_url,
                api_key=api_key,
                timeout_s=config.timeout_s,
            ),
        )
    return EchoWorkspaceProvisioner(), EchoAgentSessionClient()


__all__ = [
    "AgentConfig",
    "AgentSessionClient",
    "AgentSignal",
    "EchoAgentSessionClient",
    "EchoWorkspaceProvisioner",
    "HttpAgentSessionClient",
    "HttpWorkspaceProvisioner",
    "ProvisionError",
    "SignalKind",
    "SubmitError",
    "TaskPayload",
    "WorkspaceProvisioner",
    "create_agent_adapters",
    "load_agent_config",
]
