"""运维路由 -- /api/maintenance

POST /api/maintenance/recover-stuck-tasks: 把卡住的任务置为 failed（actor 为 system）。
适合由外部定时器周期调用；判定时长通过环境变量配置。
"""

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ...core.models import Task
from ...core.monitor import ExecutionMonitor
from ..deps import get_monitor

log = structlog.get_logger()

router = APIRouter(prefix="/api/maintenance")


class RecoverStuckResponse(BaseModel):
    recovered: list[Task]


@router.post("/recover-stuck-tasks", response_model=RecoverStuckResponse)
async def recover_stuck_tasks(monitor: ExecutionMonitor = Depends(get_monitor)):
    """扫描并恢复卡住的 queued / delegated / in_progress 任务"""
    recovered = await monitor.recover_stuck_tasks()
    log.info(
        "stuck_task_recovery_requested",
        recovered=[t.task_id for t in recovered],
    )
    return RecoverStuckResponse(recovered=recovered)
