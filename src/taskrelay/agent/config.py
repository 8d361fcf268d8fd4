"""AgentConfig -- 外部 agent / workspace 适配器配置加载

从环境变量加载配置，echo 模式在进程内模拟 agent 与开机流程。
"""

import os
from typing import Literal

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()


class AgentConfig(BaseModel):
    """Agent 适配器配置 -- 从环境变量加载

    环境变量:
        TASKRELAY_AGENT_MODE: 运行模式（echo/http）
        TASKRELAY_AGENT_BASE_URL: agent 会话服务地址
        TASKRELAY_PROVISIONER_BASE_URL: workspace 开机服务地址
        TASKRELAY_AGENT_API_KEY: 访问密钥
        TASKRELAY_AGENT_TIMEOUT_S: 单次 HTTP 调用超时（秒，默认 30）
        TASKRELAY_WORKSPACE_READY_TIMEOUT_S: 等待 workspace 就绪的超时（秒，默认 600）
    """

    agent_mode: Literal["echo", "http"] = Field(
        default="echo",
        description="适配器模式：echo / http",
    )
    agent_base_url: str = Field(default="http://localhost:8080")
    provisioner_base_url: str = Field(default="http://localhost:8081")
    api_key: SecretStr = Field(default=SecretStr(""))
    timeout_s: int = Field(default=30, ge=1, description="单次调用超时（秒）")
    ready_timeout_s: int = Field(default=600, ge=1, description="等待就绪超时（秒）")
    ready_poll_interval_s: float = Field(default=5.0, gt=0, description="就绪轮询间隔（秒）")


def _int_env(kwargs: dict, key: str, env_var: str, fallback: int) -> None:
    if val := os.environ.get(env_var):
        try:
            kwargs[key] = int(val)
        except ValueError:
            log.warning(
                "invalid_timeout_config",
                env_var=env_var,
                value=val,
                fallback=fallback,
            )


def load_agent_config() -> AgentConfig:
    """从环境变量加载 Agent 配置

    Returns:
        AgentConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("TASKRELAY_AGENT_MODE"):
        if val in ("echo", "http"):
            kwargs["agent_mode"] = val
        else:
            log.warning("invalid_agent_mode", value=val, fallback="echo")

    if val := os.environ.get("TASKRELAY_AGENT_BASE_URL"):
        kwargs["agent_base_url"] = val

    if val := os.environ.get("TASKRELAY_PROVISIONER_BASE_URL"):
        kwargs["provisioner_base_url"] = val

    if val := os.environ.get("TASKRELAY_AGENT_API_KEY"):
        kwargs["api_key"] = SecretStr(val)

    _int_env(kwargs, "timeout_s", "TASKRELAY_AGENT_TIMEOUT_S", 30)
    _int_env(kwargs, "ready_timeout_s", "TASKRELAY_WORKSPACE_READY_TIMEOUT_S", 600)

    return AgentConfig(**kwargs)
