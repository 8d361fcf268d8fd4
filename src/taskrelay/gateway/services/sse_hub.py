"""SSEHub -- 内存中事件广播器

每个订阅者持有一个 asyncio.Queue。广播的消息可以是状态事件、
blocked 翻转或进度说明，由 stream 路由负责序列化。
"""

import asyncio
from collections import defaultdict

import structlog
from pydantic import BaseModel

log = structlog.get_logger()


class SSEHub:
    """SSE 事件广播器 -- 基于 asyncio.Queue 的发布/订阅模式"""

    def __init__(self, queue_maxsize: int = 100) -> None:
        # task_id -> set of asyncio.Queue
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._queue_maxsize = queue_maxsize

    async def subscribe(self, task_id: str) -> asyncio.Queue:
        """订阅指定任务的消息流

        Args:
            task_id: 要订阅的任务 ID

        Returns:
            asyncio.Queue 实例，新消息会被推送到此队列
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers[task_id].add(queue)
        return queue

    async def unsubscribe(self, task_id: str, queue: asyncio.Queue) -> None:
        """取消订阅"""
        self._subscribers[task_id].discard(queue)
        if not self._subscribers[task_id]:
            del self._subscribers[task_id]

    async def broadcast(self, task_id: str, message: BaseModel) -> None:
        """向指定任务的所有订阅者广播消息

        队列已满的订阅者视为掉线，直接移除（客户端可凭 Last-Event-ID 重连补齐）。
        """
        dead_queues = []
        for queue in self._subscribers.get(task_id, set()):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                dead_queues.append(queue)

        for q in dead_queues:
            self._subscribers[task_id].discard(q)
        if dead_queues:
            log.warning("sse_subscriber_dropped", task_id=task_id, count=len(dead_queues))
        if task_id in self._subscribers and not self._subscribers[task_id]:
            del self._subscribers[task_id]

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, ()))
