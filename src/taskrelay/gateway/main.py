"""FastAPI 应用主文件

app 创建 + lifespan 管理：DB 初始化/关闭、核心服务装配、agent 适配器选择、
路由注册与统一错误渲染。
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from starlette.responses import JSONResponse

from ..agent import (
    AgentSessionClient,
    WorkspaceProvisioner,
    create_agent_adapters,
    load_agent_config,
)
from ..core.config import get_db_path
from ..core.delegation import DelegationCoordinator
from ..core.errors import TaskRelayError
from ..core.graph import DependencyGraph
from ..core.monitor import ExecutionMonitor
from ..core.state_machine import TaskStateMachine
from ..core.store import StoreGroup, create_store_group
from ..core.task_service import TaskService
from .middleware.logging_config import setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import health, maintenance, stream, tasks
from .services.sse_hub import SSEHub

log = structlog.get_logger()


def init_app_state(
    app: FastAPI,
    store_group: StoreGroup,
    provisioner: WorkspaceProvisioner,
    agent_client: AgentSessionClient,
) -> None:
    """装配核心服务并挂到 app.state（测试可直接调用以注入替身）"""
    hub = SSEHub()
    graph = DependencyGraph(store_group, hub=hub)
    state_machine = TaskStateMachine(store_group, graph, hub=hub)
    monitor = ExecutionMonitor(state_machine, agent_client, hub=hub)

    app.state.store_group = store_group
    app.state.sse_hub = hub
    app.state.agent_client = agent_client
    app.state.monitor = monitor
    app.state.task_service = TaskService(
        store_group, graph, state_machine, monitor=monitor, hub=hub
    )
    app.state.delegation = DelegationCoordinator(
        store_group,
        graph,
        state_machine,
        agent_client,
        provisioner,
        monitor,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理：启动时初始化 DB 与服务，关闭时停止 watcher 并关闭连接"""
    store_group = await create_store_group(get_db_path())

    agent_config = load_agent_config()
    app.state.agent_config = agent_config
    provisioner, agent_client = create_agent_adapters(agent_config)
    init_app_state(app, store_group, provisioner, agent_client)
    log.info(
        "agent_adapters_initialized",
        mode=agent_config.agent_mode,
        agent_url=agent_config.agent_base_url if agent_config.agent_mode == "http" else None,
        timeout_s=agent_config.timeout_s,
    )

    yield

    await app.state.monitor.shutdown()
    await store_group.close()


async def taskrelay_error_handler(request: Request, exc: TaskRelayError) -> JSONResponse:
    """统一错误渲染：{"error": {"code", "message"}}"""
    log.info(
        "request_rejected",
        error_code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "recoverable": exc.recoverable,
            }
        },
    )


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="taskrelay Gateway",
        version="0.1.0",
        description="任务生命周期、依赖图与 agent 委派 API",
        lifespan=lifespan,
    )

    # 后注册的在外层：Trace 先重置并绑定上下文，Logging 在其内记录访问日志
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(TraceMiddleware)

    setup_logging()

    app.add_exception_handler(TaskRelayError, taskrelay_error_handler)

    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(stream.router, tags=["stream"])
    app.include_router(maintenance.router, tags=["maintenance"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
