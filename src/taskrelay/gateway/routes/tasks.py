"""任务路由 -- /api/projects/{project_id}/tasks

CRUD、状态流转、依赖边、委派/运行/取消、事件查询，以及 workspace
回调推送接口。所有错误由 TaskRelayError 统一处理器渲染。
"""

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse, Response

from ...agent.models import AgentSignal, SignalKind
from ...core.delegation import DelegationCoordinator
from ...core.models import (
    ActorType,
    Task,
    TaskCreate,
    TaskDependency,
    TaskDetail,
    TaskPage,
    TaskSortOrder,
    TaskStatus,
    TaskStatusEvent,
    TaskUpdate,
)
from ...core.monitor import ExecutionMonitor
from ...core.task_service import TaskService
from ..deps import get_delegation, get_monitor, get_task_service

router = APIRouter(prefix="/api/projects/{project_id}/tasks")


class StatusChangeRequest(BaseModel):
    """状态流转请求体"""

    to_status: TaskStatus
    reason: str | None = None
    actor_id: str | None = None
    expected_version: int | None = None
    output_summary: str | None = None
    output_branch: str | None = None
    output_pr_url: str | None = None
    error_message: str | None = None


class DependencyRequest(BaseModel):
    depends_on_task_id: str = Field(min_length=1)


class DependencyRemovedResponse(BaseModel):
    removed: bool


class DelegateRequest(BaseModel):
    """委派到已就绪 workspace 的请求体"""

    workspace_id: str = Field(min_length=1)
    branch_hint: str | None = None
    actor_id: str | None = None


class RunRequest(BaseModel):
    """开新 workspace 并委派的请求体"""

    size_hint: str | None = None
    branch_hint: str | None = None
    actor_id: str | None = None


class RunAcceptedResponse(BaseModel):
    task_id: str
    status: TaskStatus
    accepted: bool = True


class CancelRequest(BaseModel):
    reason: str | None = None
    actor_id: str | None = None
    expected_version: int | None = None


class EventListResponse(BaseModel):
    events: list[TaskStatusEvent]


class AgentCallbackRequest(BaseModel):
    """workspace 推送的执行信号"""

    kind: SignalKind
    workspace_id: str | None = None
    note: str | None = None
    output_summary: str | None = None
    output_branch: str | None = None
    output_pr_url: str | None = None
    reason: str | None = None


class AgentCallbackResponse(BaseModel):
    applied: bool = Field(description="False 表示信号已过期（任务已终态或委派已被取代）")
    task: Task | None = None


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


@router.post("", status_code=status.HTTP_201_CREATED, response_model=Task)
async def create_task(
    project_id: str,
    body: TaskCreate,
    service: TaskService = Depends(get_task_service),
):
    """创建 draft 任务（可同时声明依赖）"""
    return await service.create_task(project_id, body)


@router.get("", response_model=TaskPage)
async def list_tasks(
    project_id: str,
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    min_priority: int | None = Query(default=None),
    sort: TaskSortOrder = Query(default=TaskSortOrder.CREATED_AT_DESC),
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    service: TaskService = Depends(get_task_service),
):
    """分页查询任务列表"""
    return await service.list_tasks(
        project_id,
        status=status_filter,
        min_priority=min_priority,
        sort=sort,
        limit=limit,
        cursor=cursor,
    )


@router.get("/{task_id}", response_model=TaskDetail)
async def get_task(
    project_id: str,
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    return await service.get_task_detail(project_id, task_id)


@router.patch("/{task_id}", response_model=Task)
async def update_task(
    project_id: str,
    task_id: str,
    body: TaskUpdate,
    service: TaskService = Depends(get_task_service),
):
    """编辑 draft / ready 任务"""
    return await service.update_task(project_id, task_id, body)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(
    project_id: str,
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    await service.delete_task(project_id, task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# 状态 / 依赖
# ---------------------------------------------------------------------------


@router.post("/{task_id}/status", response_model=Task)
async def change_status(
    project_id: str,
    task_id: str,
    body: StatusChangeRequest,
    service: TaskService = Depends(get_task_service),
):
    """调用方发起的状态流转（delegated 只能经由 delegate / run）"""
    return await service.transition(
        project_id,
        task_id,
        body.to_status,
        reason=body.reason,
        actor_type=ActorType.USER,
        actor_id=body.actor_id,
        expected_version=body.expected_version,
        output_summary=body.output_summary,
        output_branch=body.output_branch,
        output_pr_url=body.output_pr_url,
        error_message=body.error_message,
    )


@router.post(
    "/{task_id}/dependencies",
    status_code=status.HTTP_201_CREATED,
    response_model=TaskDependency,
)
async def add_dependency(
    project_id: str,
    task_id: str,
    body: DependencyRequest,
    service: TaskService = Depends(get_task_service),
):
    return await service.add_dependency(project_id, task_id, body.depends_on_task_id)


@router.delete("/{task_id}/dependencies", response_model=DependencyRemovedResponse)
async def remove_dependency(
    project_id: str,
    task_id: str,
    depends_on_task_id: str = Query(min_length=1),
    service: TaskService = Depends(get_task_service),
):
    removed = await service.remove_dependency(project_id, task_id, depends_on_task_id)
    return DependencyRemovedResponse(removed=removed)


# ---------------------------------------------------------------------------
# 委派 / 运行 / 取消
# ---------------------------------------------------------------------------


@router.post("/{task_id}/delegate", response_model=Task)
async def delegate_task(
    project_id: str,
    task_id: str,
    body: DelegateRequest,
    delegation: DelegationCoordinator = Depends(get_delegation),
):
    """委派到已就绪的 workspace（提交成功后才返回 delegated）"""
    return await delegation.delegate(
        project_id,
        task_id,
        body.workspace_id,
        actor_type=ActorType.USER,
        actor_id=body.actor_id,
        branch_hint=body.branch_hint,
    )


@router.post("/{task_id}/run", status_code=status.HTTP_202_ACCEPTED)
async def run_task(
    project_id: str,
    task_id: str,
    body: RunRequest | None = None,
    delegation: DelegationCoordinator = Depends(get_delegation),
    monitor: ExecutionMonitor = Depends(get_monitor),
):
    """开新 workspace 并委派

    前置条件同步校验（409）；开机与提交在后台进行，失败写入事件日志。
    """
    body = body or RunRequest()
    task = await delegation.ensure_delegable(project_id, task_id)
    monitor.spawn(
        delegation.run_on_new_workspace(
            project_id,
            task_id,
            size_hint=body.size_hint,
            branch_hint=body.branch_hint,
            actor_type=ActorType.USER,
            actor_id=body.actor_id,
        ),
        name=f"run-{task_id}",
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=RunAcceptedResponse(task_id=task.task_id, status=task.status).model_dump(
            mode="json"
        ),
    )


@router.post("/{task_id}/cancel", response_model=Task)
async def cancel_task(
    project_id: str,
    task_id: str,
    body: CancelRequest | None = None,
    service: TaskService = Depends(get_task_service),
):
    """取消任务；执行中的会话在后台停止，任务立即进入 cancelled"""
    body = body or CancelRequest()
    return await service.transition(
        project_id,
        task_id,
        TaskStatus.CANCELLED,
        reason=body.reason,
        actor_type=ActorType.USER,
        actor_id=body.actor_id,
        expected_version=body.expected_version,
    )


# ---------------------------------------------------------------------------
# 事件 / 回调
# ---------------------------------------------------------------------------


@router.get("/{task_id}/events", response_model=EventListResponse)
async def list_events(
    project_id: str,
    task_id: str,
    limit: int | None = Query(default=None, ge=1),
    service: TaskService = Depends(get_task_service),
):
    """任务事件，新的在前"""
    events = await service.list_events(project_id, task_id, limit)
    return EventListResponse(events=events)


@router.post("/{task_id}/agent-callback", response_model=AgentCallbackResponse)
async def agent_callback(
    project_id: str,
    task_id: str,
    body: AgentCallbackRequest,
    service: TaskService = Depends(get_task_service),
    monitor: ExecutionMonitor = Depends(get_monitor),
):
    """workspace 推送执行信号；过期信号返回 applied=false"""
    await service.get_task(project_id, task_id)
    signal = AgentSignal(
        kind=body.kind,
        note=body.note,
        output_summary=body.output_summary,
        output_branch=body.output_branch,
        output_pr_url=body.output_pr_url,
        reason=body.reason,
    )
    task = await monitor.handle_signal(
        task_id,
        signal,
        workspace_id=body.workspace_id,
        actor_type=ActorType.WORKSPACE_CALLBACK,
    )
    return AgentCallbackResponse(applied=task is not None, task=task)
