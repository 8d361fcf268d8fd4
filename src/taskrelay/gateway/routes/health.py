"""健康检查路由

GET /health: Liveness 检查，永远返回 200。
GET /ready: Readiness 检查，包含 SQLite 连通性、WAL 模式，
            profile=agent 时额外探测外部 agent 服务。
"""

import structlog
from fastapi import APIRouter, Query, Request
from starlette.responses import JSONResponse

from ...core.store.sqlite_init import verify_wal_mode

log = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health():
    """Liveness 检查 -- 永远返回 200"""
    return {"status": "ok"}


@router.get("/ready")
async def ready(
    request: Request,
    profile: str | None = Query(
        default=None,
        description="检查配置：core（默认）仅核心检查；agent 额外探测 agent 服务",
    ),
):
    """Readiness 检查 -- 验证核心依赖可用性

    检查项：
    1. sqlite: 数据库连通性
    2. wal_mode: 数据库处于 WAL 模式
    3. agent: profile=agent 时探测 agent 服务（echo 模式为 skipped）
    """
    effective_profile = profile or "core"
    checks: dict[str, str] = {}
    all_ok = True

    store_group = request.app.state.store_group
    try:
        cursor = await store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
        checks["sqlite"] = "ok"
    except Exception as e:
        checks["sqlite"] = f"error: {str(e)}"
        all_ok = False

    try:
        checks["wal_mode"] = "ok" if await verify_wal_mode(store_group.conn) else "disabled"
    except Exception as e:
        checks["wal_mode"] = f"error: {str(e)}"
        all_ok = False

    if effective_profile in ("agent", "full"):
        health_check = getattr(request.app.state.agent_client, "health_check", None)
        if health_check is None:
            checks["agent"] = "skipped"
        elif await health_check():
            checks["agent"] = "ok"
        else:
            checks["agent"] = "unreachable"
            all_ok = False
    else:
        checks["agent"] = "skipped"

    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={
            "status": "ready" if all_ok else "not_ready",
            "profile": effective_profile,
            "checks": checks,
        },
    )
