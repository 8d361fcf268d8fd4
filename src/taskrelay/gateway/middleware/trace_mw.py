"""TraceMiddleware -- 把路径中的项目 / 任务标识绑定到 structlog contextvars

  /api/projects/{project_id}/tasks/{task_id}/...  -> project_id, task_id, trace_id
  /api/projects/{project_id}/tasks                -> project_id
  /api/stream/task/{task_id}                      -> task_id, trace_id

同一请求内的所有日志（包括核心层）都可按项目或任务过滤。
"""

from typing import NamedTuple

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response


class RouteContext(NamedTuple):
    project_id: str | None
    task_id: str | None


def parse_route_context(path: str) -> RouteContext:
    """按 "projects/<id>" 与 "tasks|task/<id>" 片段解析路径"""
    parts = [p for p in path.split("/") if p]
    project_id = task_id = None
    for key, value in zip(parts, parts[1:]):
        if key == "projects" and project_id is None:
            project_id = value
        elif key in ("tasks", "task") and task_id is None:
            task_id = value
    return RouteContext(project_id, task_id)


def extract_task_id(path: str) -> str | None:
    return parse_route_context(path).task_id


def extract_project_id(path: str) -> str | None:
    return parse_route_context(path).project_id


class TraceMiddleware(BaseHTTPMiddleware):
    """最外层中间件：重置并绑定本次请求的日志上下文"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        structlog.contextvars.clear_contextvars()
        project_id, task_id = parse_route_context(request.url.path)
        if project_id:
            structlog.contextvars.bind_contextvars(project_id=project_id)
        if task_id:
            structlog.contextvars.bind_contextvars(
                task_id=task_id,
                trace_id=f"trace-{task_id}",
            )
        return await call_next(request)
