"""DelegationCoordinator -- 把 ready/queued 任务绑定到 workspace 并提交给 agent

先提交、后确认：只有拿到 agent 返回的 session_id 之后，任务才进入
delegated；提交失败时任务保持原状态，失败原因写入事件日志。
"""

import asyncio

import structlog

from ..agent.exceptions import ProvisionError, SubmitError
from ..agent.models import TaskPayload
from ..agent.protocols import AgentSessionClient, WorkspaceProvisioner
from .branch_name import generate_branch_name
from .config import AGENT_CALL_TIMEOUT_S
from .errors import (
    TaskBlockedError,
    TaskNotDelegableError,
    TaskRelayError,
    ValidationError,
    WorkspaceBusyError,
)
from .graph import DependencyGraph
from .locks import KeyedLocks
from .models.enums import DELEGABLE_STATES, ActorType, TaskStatus
from .models.task import Task
from .monitor import ExecutionMonitor
from .state_machine import TaskStateMachine
from .store import StoreGroup

log = structlog.get_logger()


class DelegationCoordinator:
    """委派协调器

    锁顺序：任务锁 -> workspace 锁。workspace 锁保证同一 workspace
    同一时刻最多绑定一个活跃任务。
    """

    def __init__(
        self,
        stores: StoreGroup,
        graph: DependencyGraph,
        state_machine: TaskStateMachine,
        agent_client: AgentSessionClient,
        provisioner: WorkspaceProvisioner,
        monitor: ExecutionMonitor,
    ) -> None:
        self._stores = stores
        self._graph = graph
        self._state_machine = state_machine
        self._agent_client = agent_client
        self._provisioner = provisioner
        self._monitor = monitor
        self._workspace_locks = KeyedLocks()

    async def delegate(
        self,
        project_id: str,
        task_id: str,
        workspace_id: str,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
        branch_hint: str | None = None,
    ) -> Task:
        """把任务委派到已就绪的 workspace

        Args:
            project_id: 项目 ID
            task_id: 任务 ID
            workspace_id: 目标 workspace
            actor_type: 操作者类型
            actor_id: 操作者标识
            branch_hint: 输出分支建议，None 时由标题生成

        Returns:
            进入 delegated 的 Task

        Raises:
            TaskNotDelegableError: 任务不在 ready / queued
            TaskBlockedError: 存在未完成的依赖
            WorkspaceBusyError: workspace 已绑定其他活跃任务
            SubmitError: 提交失败，任务保持原状态
        """
        workspace_id = (workspace_id or "").strip()
        if not workspace_id:
            raise ValidationError("workspace_id is required")

        async with self._state_machine.task_locks.hold(task_id):
            async with self._workspace_locks.hold(workspace_id):
                task = await self._state_machine.get_task(task_id, project_id)
                await self._check_delegable(task)

                active = await self._stores.task_store.find_active_task_for_workspace(
                    workspace_id
                )
                if active is not None:
                    raise WorkspaceBusyError(workspace_id, active.task_id)

                payload = TaskPayload(
                    task_id=task.task_id,
                    project_id=task.project_id,
                    title=task.title,
                    description=task.description,
                    agent_profile_hint=task.agent_profile_hint,
                    branch_hint=branch_hint or generate_branch_name(task.title, task.task_id),
                )
                try:
                    session_id = await self._submit(workspace_id, payload)
                except SubmitError as e:
                    await self._state_machine.record_attempt(task_id, e.message)
                    raise

                try:
                    updated = await self._state_machine.apply_transition(
                        task_id,
                        TaskStatus.DELEGATED,
                        actor_type,
                        actor_id=actor_id,
                        reason=f"Delegated to workspace {workspace_id}",
                        workspace_id=workspace_id,
                        agent_session_id=session_id,
                    )
                except Exception as e:
                    # 会话已创建但绑定失败：撤回会话，失败原因同样写入事件日志
                    self._monitor.stop_session_later(task_id, workspace_id, session_id)
                    reason = e.message if isinstance(e, TaskRelayError) else str(e)
                    await self._state_machine.record_attempt(
                        task_id, f"Binding session {session_id} failed: {reason}"
                    )
                    raise

        self._monitor.start_watch(task_id, workspace_id, session_id)
        log.info(
            "task_delegated",
            task_id=task_id,
            project_id=project_id,
            workspace_id=workspace_id,
            session_id=session_id,
        )
        return updated

    async def run_on_new_workspace(
        self,
        project_id: str,
        task_id: str,
        size_hint: str | None = None,
        branch_hint: str | None = None,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
    ) -> Task:
        """开一台新 workspace，等待就绪后委派

        开机失败时任务保持原状态，记录一条 DELEGATION_FAILED 事件后抛出。

        Raises:
            ProvisionError: 开机失败或未能就绪
            以及 delegate 的全部异常
        """
        task = await self.ensure_delegable(project_id, task_id)
        branch_hint = branch_hint or generate_branch_name(task.title, task.task_id)

        log.info(
            "workspace_provision_started",
            task_id=task_id,
            project_id=project_id,
            size_hint=size_hint,
            branch_hint=branch_hint,
        )
        try:
            workspace_id = await self._provision(project_id, branch_hint, size_hint)
        except ProvisionError as e:
            async with self._state_machine.task_locks.hold(task_id):
                await self._state_machine.record_attempt(task_id, e.message)
            raise

        return await self.delegate(
            project_id,
            task_id,
            workspace_id,
            actor_type=actor_type,
            actor_id=actor_id,
            branch_hint=branch_hint,
        )

    async def ensure_delegable(self, project_id: str, task_id: str) -> Task:
        """无锁预检查：任务可被委派时返回当前快照（委派时会在锁内重新校验）"""
        task = await self._state_machine.get_task(task_id, project_id)
        await self._check_delegable(task)
        return task

    async def _check_delegable(self, task: Task) -> None:
        if task.status not in DELEGABLE_STATES:
            raise TaskNotDelegableError(task.task_id, task.status)
        if await self._graph.is_blocked(task.task_id):
            raise TaskBlockedError(task.task_id)

    async def _submit(self, workspace_id: str, payload: TaskPayload) -> str:
        """带超时保护的提交，所有失败统一为 SubmitError"""
        try:
            session_id = await asyncio.wait_for(
                self._agent_client.submit(workspace_id, payload),
                timeout=AGENT_CALL_TIMEOUT_S,
            )
        except SubmitError:
            raise
        except TimeoutError as e:
            raise SubmitError(workspace_id, f"timed out after {AGENT_CALL_TIMEOUT_S:g}s") from e
        except Exception as e:
            raise SubmitError(workspace_id, f"{type(e).__name__}: {e}") from e

        if not session_id:
            raise SubmitError(workspace_id, "agent returned no session id")
        return session_id

    async def _provision(
        self, project_id: str, branch_hint: str, size_hint: str | None
    ) -> str:
        try:
            workspace_id = await asyncio.wait_for(
                self._provisioner.launch(project_id, branch_hint, size_hint),
                timeout=AGENT_CALL_TIMEOUT_S,
            )
            await self._provisioner.wait_ready(workspace_id)
        except ProvisionError:
            raise
        except TimeoutError as e:
            raise ProvisionError(
                f"Workspace launch timed out after {AGENT_CALL_TIMEOUT_S:g}s"
            ) from e
        except Exception as e:
            raise ProvisionError(f"Workspace provisioning failed: {type(e).__name__}: {e}") from e

        log.info("workspace_provisioned", project_id=project_id, workspace_id=workspace_id)
        return workspace_id
