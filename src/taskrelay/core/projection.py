"""Projection 校验模块

tasks.status 是事件日志的物化视图：按 task_seq 重放某任务的事件，
得到的状态必须与 tasks 表中保存的状态一致。
"""

import time
from collections import defaultdict
from collections.abc import Iterable

import structlog
from pydantic import BaseModel

from .models.enums import EventType, TaskStatus
from .models.event import TaskStatusEvent
from .store import StoreGroup

log = structlog.get_logger()


class ProjectionMismatch(BaseModel):
    """一条不一致记录"""

    task_id: str
    stored_status: TaskStatus
    replayed_status: TaskStatus | None
    detail: str


def replay_status(events: Iterable[TaskStatusEvent]) -> TaskStatus | None:
    """按 task_seq 重放单个任务的事件，返回最终状态

    DELEGATION_FAILED 事件不改变状态；没有任何事件时返回 None。
    """
    status: TaskStatus | None = None
    for event in sorted(events, key=lambda e: e.task_seq):
        if event.type == EventType.DELEGATION_FAILED:
            continue
        status = event.to_status
    return status


def _chain_breaks(events: list[TaskStatusEvent]) -> list[str]:
    """检查每条流转事件的 from_status 是否接续上一状态"""
    breaks: list[str] = []
    current: TaskStatus | None = None
    for event in sorted(events, key=lambda e: e.task_seq):
        if event.type == EventType.DELEGATION_FAILED:
            continue
        if event.type == EventType.STATE_TRANSITION and event.from_status != current:
            breaks.append(
                f"seq {event.task_seq}: from {event.from_status} but replayed {current}"
            )
        current = event.to_status
    return breaks


async def verify_projections(stores: StoreGroup) -> list[ProjectionMismatch]:
    """重放所有任务的事件并与 tasks 表比对

    已删除任务的事件保留在日志中，不参与比对。

    Returns:
        不一致列表，空列表表示全部一致
    """
    start_time = time.monotonic()

    events_by_task: dict[str, list[TaskStatusEvent]] = defaultdict(list)
    events = await stores.event_store.get_all_events()
    for event in events:
        events_by_task[event.task_id].append(event)

    tasks = await stores.task_store.list_all_tasks()
    mismatches: list[ProjectionMismatch] = []
    for task in tasks:
        task_events = events_by_task.get(task.task_id, [])
        replayed = replay_status(task_events)
        if replayed != task.status:
            mismatches.append(
                ProjectionMismatch(
                    task_id=task.task_id,
                    stored_status=task.status,
                    replayed_status=replayed,
                    detail="stored status differs from event log",
                )
            )
            continue
        breaks = _chain_breaks(task_events)
        if breaks:
            mismatches.append(
                ProjectionMismatch(
                    task_id=task.task_id,
                    stored_status=task.status,
                    replayed_status=replayed,
                    detail="; ".join(breaks),
                )
            )

    log.info(
        "projection_verified",
        event_count=len(events),
        task_count=len(tasks),
        mismatch_count=len(mismatches),
        elapsed_ms=int((time.monotonic() - start_time) * 1000),
    )
    return mismatches
