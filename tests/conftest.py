"""全局 pytest 配置 -- 临时 SQLite Store + 外部 agent / workspace 替身"""

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from pathlib import Path

import pytest_asyncio
from pydantic import BaseModel

from taskrelay.agent.models import AgentSignal, TaskPayload
from taskrelay.core.delegation import DelegationCoordinator
from taskrelay.core.graph import DependencyGraph
from taskrelay.core.models import TaskCreate, TaskStatus
from taskrelay.core.monitor import ExecutionMonitor
from taskrelay.core.state_machine import TaskStateMachine
from taskrelay.core.store import StoreGroup, create_store_group
from taskrelay.core.task_service import TaskService

PROJECT_ID = "proj-1"


class RecordingHub:
    """记录所有广播消息的 hub 替身"""

    def __init__(self) -> None:
        self.messages: list[tuple[str, BaseModel]] = []

    async def broadcast(self, task_id: str, message: BaseModel) -> None:
        self.messages.append((task_id, message))

    def of_type(self, model: type) -> list:
        return [m for _, m in self.messages if isinstance(m, model)]


class FakeAgentClient:
    """可编排的 agent 会话替身

    - submit_error: 非 None 时 submit 抛出该异常
    - submit_delay: submit 前等待的秒数
    - stop_gate: 非 None 时 stop 在记录调用后一直等待该 Event
    - emit()/fail_stream()/end_stream(): 向 watch 流推送信号
    """

    def __init__(self) -> None:
        self.submitted: list[tuple[str, TaskPayload]] = []
        self.stopped: list[tuple[str, str]] = []
        self.submit_error: Exception | None = None
        self.submit_delay = 0.0
        self.stop_gate: asyncio.Event | None = None
        self._streams: dict[str, asyncio.Queue] = {}

    async def submit(self, workspace_id: str, payload: TaskPayload) -> str:
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((workspace_id, payload))
        session_id = f"sess-{len(self.submitted)}"
        self._streams[session_id] = asyncio.Queue()
        return session_id

    async def stop(self, workspace_id: str, session_id: str) -> None:
        self.stopped.append((workspace_id, session_id))
        if self.stop_gate is not None:
            await self.stop_gate.wait()

    async def watch(self, workspace_id: str, session_id: str) -> AsyncIterator[AgentSignal]:
        queue = self._streams.setdefault(session_id, asyncio.Queue())
        while True:
            item = await queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def emit(self, session_id: str, signal: AgentSignal) -> None:
        await self._streams.setdefault(session_id, asyncio.Queue()).put(signal)

    async def fail_stream(self, session_id: str, error: Exception) -> None:
        await self._streams.setdefault(session_id, asyncio.Queue()).put(error)

    async def end_stream(self, session_id: str) -> None:
        await self._streams.setdefault(session_id, asyncio.Queue()).put(None)


class FakeProvisioner:
    """workspace 开机替身"""

    def __init__(self) -> None:
        self.launched: list[tuple[str, str | None, str | None]] = []
        self.launch_error: Exception | None = None
        self.ready_error: Exception | None = None

    async def launch(
        self,
        project_id: str,
        branch_hint: str | None = None,
        size_hint: str | None = None,
    ) -> str:
        if self.launch_error is not None:
            raise self.launch_error
        self.launched.append((project_id, branch_hint, size_hint))
        return f"ws-new-{len(self.launched)}"

    async def wait_ready(self, workspace_id: str) -> None:
        if self.ready_error is not None:
            raise self.ready_error


async def _wait_for_status(
    stores: StoreGroup,
    task_id: str,
    status: TaskStatus,
    timeout: float = 2.0,
) -> None:
    """轮询直到任务进入目标状态"""

    async def _poll() -> None:
        while True:
            task = await stores.task_store.get_task(task_id)
            if task is not None and task.status == status:
                return
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest_asyncio.fixture
async def stores(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """已初始化的临时 Store 实例组"""
    store_group = await create_store_group(str(tmp_path / "test.db"))
    yield store_group
    await store_group.close()


@pytest_asyncio.fixture
async def hub() -> RecordingHub:
    return RecordingHub()


@pytest_asyncio.fixture
async def graph(stores, hub) -> DependencyGraph:
    return DependencyGraph(stores, hub=hub)


@pytest_asyncio.fixture
async def state_machine(stores, graph, hub) -> TaskStateMachine:
    return TaskStateMachine(stores, graph, hub=hub)


@pytest_asyncio.fixture
async def agent_client() -> FakeAgentClient:
    return FakeAgentClient()


@pytest_asyncio.fixture
async def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest_asyncio.fixture
async def monitor(state_machine, agent_client, hub) -> AsyncGenerator[ExecutionMonitor, None]:
    execution_monitor = ExecutionMonitor(state_machine, agent_client, hub=hub)
    yield execution_monitor
    await execution_monitor.shutdown()


@pytest_asyncio.fixture
async def service(stores, graph, state_machine, monitor, hub) -> TaskService:
    return TaskService(stores, graph, state_machine, monitor=monitor, hub=hub)


@pytest_asyncio.fixture
async def delegation(
    stores, graph, state_machine, agent_client, provisioner, monitor
) -> DelegationCoordinator:
    return DelegationCoordinator(
        stores, graph, state_machine, agent_client, provisioner, monitor
    )


@pytest_asyncio.fixture
async def make_task(service):
    """创建任务的工厂：make_task("标题", status=TaskStatus.READY, depends_on=[...])"""

    async def _make(
        title: str = "Implement feature",
        status: TaskStatus = TaskStatus.DRAFT,
        project_id: str = PROJECT_ID,
        **kwargs,
    ):
        task = await service.create_task(project_id, TaskCreate(title=title, **kwargs))
        if status != TaskStatus.DRAFT:
            task = await service.transition(project_id, task.task_id, TaskStatus.READY)
        if status == TaskStatus.QUEUED:
            task = await service.transition(project_id, task.task_id, TaskStatus.QUEUED)
        return task

    return _make


@pytest_asyncio.fixture
async def wait_for_status(stores):
    """wait_for_status(task_id, status) -- 轮询直到任务进入目标状态"""

    async def _wait(task_id: str, status: TaskStatus, timeout: float = 2.0) -> None:
        await _wait_for_status(stores, task_id, status, timeout)

    return _wait
