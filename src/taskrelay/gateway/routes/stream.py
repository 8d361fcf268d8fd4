"""SSE 事件流路由

GET /api/stream/task/{task_id}: 实时推送指定任务的状态事件、blocked 翻转与进度说明。
支持历史事件推送、Last-Event-ID 断线重连、心跳保活；任务到达终态的事件携带 final: true。
"""

import asyncio
import json

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from ...core import config
from ...core.errors import TaskNotFoundError
from ...core.models import TERMINAL_STATES, BlockedChange, ProgressNote, TaskStatusEvent
from ...core.models.enums import EventType
from ...core.store import StoreGroup
from ..deps import get_sse_hub, get_store_group
from ..services.sse_hub import SSEHub

router = APIRouter()


def _is_final(message: BaseModel) -> bool:
    """状态流转事件进入终态即为 final"""
    return (
        isinstance(message, TaskStatusEvent)
        and message.type == EventType.STATE_TRANSITION
        and message.to_status in TERMINAL_STATES
    )


def to_sse(message: BaseModel) -> dict:
    """把 hub 消息转换为 sse-starlette 的帧"""
    if isinstance(message, TaskStatusEvent):
        data = message.model_dump(mode="json")
        data["final"] = _is_final(message)
        return {
            "id": message.event_id,
            "event": message.type.value,
            "data": json.dumps(data, ensure_ascii=False),
        }
    if isinstance(message, BlockedChange):
        return {"event": "BLOCKED_CHANGED", "data": message.model_dump_json()}
    if isinstance(message, ProgressNote):
        return {"event": "PROGRESS", "data": message.model_dump_json()}
    return {"event": type(message).__name__, "data": message.model_dump_json()}


@router.get("/api/stream/task/{task_id}")
async def stream_task_events(
    task_id: str,
    request: Request,
    store_group: StoreGroup = Depends(get_store_group),
    sse_hub: SSEHub = Depends(get_sse_hub),
):
    """SSE 事件流端点

    1. 推送历史事件（Last-Event-ID 存在时只推送其后的事件）
    2. 任务已在终态时推送完历史即结束
    3. 注册到 SSEHub，实时推送新消息，终态事件后结束
    4. 心跳保活
    """
    task = await store_group.task_store.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)

    last_event_id = request.headers.get("last-event-id")

    # 先订阅再读历史，避免两者之间的事件丢失；按 event_id 去重
    queue = await sse_hub.subscribe(task_id)

    async def event_generator():
        try:
            if last_event_id:
                history = await store_group.event_store.get_events_after(task_id, last_event_id)
            else:
                history = await store_group.event_store.get_events_for_task(task_id)

            seen: set[str] = set()
            for event in history:
                seen.add(event.event_id)
                yield to_sse(event)

            current = await store_group.task_store.get_task(task_id)
            if current is None or current.status in TERMINAL_STATES:
                return

            while True:
                try:
                    message = await asyncio.wait_for(
                        queue.get(), timeout=config.SSE_HEARTBEAT_INTERVAL
                    )
                except TimeoutError:
                    yield {"comment": "heartbeat"}
                    continue
                if isinstance(message, TaskStatusEvent):
                    if message.event_id in seen:
                        continue
                    seen.add(message.event_id)
                yield to_sse(message)
                if _is_final(message):
                    return
        finally:
            await sse_hub.unsubscribe(task_id, queue)

    return EventSourceResponse(event_generator())
