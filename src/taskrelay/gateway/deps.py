"""依赖注入模块 -- 通过 FastAPI Depends 注入核心服务

服务实例通过 app.state 管理，在 lifespan 中初始化/清理。
"""

from fastapi import Request

from ..core.delegation import DelegationCoordinator
from ..core.monitor import ExecutionMonitor
from ..core.store import StoreGroup
from ..core.task_service import TaskService
from .services.sse_hub import SSEHub


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_sse_hub(request: Request) -> SSEHub:
    """从 app.state 获取 SSEHub 实例"""
    return request.app.state.sse_hub


def get_task_service(request: Request) -> TaskService:
    return request.app.state.task_service


def get_delegation(request: Request) -> DelegationCoordinator:
    return request.app.state.delegation


def get_monitor(request: Request) -> ExecutionMonitor:
    return request.app.state.monitor
