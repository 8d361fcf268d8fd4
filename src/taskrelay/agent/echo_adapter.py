"""Echo 适配器 -- 进程内模拟 workspace 开机与 agent 会话

echo 模式下无需任何外部服务即可走完 ready -> delegated -> in_progress ->
completed 全流程：会话先上报一次 progress，再以回声摘要完成。
"""

import asyncio
from collections.abc import AsyncIterator

from ulid import ULID

from .models import AgentSignal, SignalKind, TaskPayload


class EchoWorkspaceProvisioner:
    """立即就绪的 workspace"""

    def __init__(self, ready_delay_s: float = 0.01) -> None:
        self._ready_delay_s = ready_delay_s

    async def launch(
        self,
        project_id: str,
        branch_hint: str | None = None,
        size_hint: str | None = None,
    ) -> str:
        return f"ws-{str(ULID()).lower()}"

    async def wait_ready(self, workspace_id: str) -> None:
        # 模拟少量开机延迟
        await asyncio.sleep(self._ready_delay_s)


class EchoAgentSessionClient:
    """回声 agent：progress 一次后以 "Echo: {title}" 完成

    会话只保留到被 watch 取走或被停止为止，之后不再占用内存。
    """

    def __init__(self, step_delay_s: float = 0.01) -> None:
        self._step_delay_s = step_delay_s
        self._payloads: dict[str, TaskPayload] = {}
        self._watching: set[str] = set()
        self._stopped: set[str] = set()

    @property
    def session_count(self) -> int:
        """尚未结束的会话数（待 watch + 正在 watch）"""
        return len(self._payloads) + len(self._watching)

    async def submit(self, workspace_id: str, payload: TaskPayload) -> str:
        session_id = f"sess-{str(ULID()).lower()}"
        self._payloads[session_id] = payload
        return session_id

    async def stop(self, workspace_id: str, session_id: str) -> None:
        self._payloads.pop(session_id, None)
        if session_id in self._watching:
            self._stopped.add(session_id)

    async def watch(self, workspace_id: str, session_id: str) -> AsyncIterator[AgentSignal]:
        payload = self._payloads.pop(session_id, None)
        if payload is None:
            return

        self._watching.add(session_id)
        try:
            await asyncio.sleep(self._step_delay_s)
            if session_id in self._stopped:
                return
            yield AgentSignal(kind=SignalKind.PROGRESS, note="Echo agent started")

            await asyncio.sleep(self._step_delay_s)
            if session_id in self._stopped:
                return
            yield AgentSignal(
                kind=SignalKind.COMPLETED,
                output_summary=f"Echo: {payload.title}",
                output_branch=payload.branch_hint,
            )
        finally:
            self._watching.discard(session_id)
            self._stopped.discard(session_id)
