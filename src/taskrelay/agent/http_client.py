"""HTTP 适配器 -- 通过 REST 接口驱动外部 workspace 与 agent 会话

接口约定:
    POST {provisioner}/workspaces                          -> {"workspace_id"}
    GET  {provisioner}/workspaces/{id}                     -> {"status"}
    POST {agent}/workspaces/{ws}/agent/sessions            -> {"session_id"}
    POST {agent}/workspaces/{ws}/agent/sessions/{sid}/stop
    GET  {agent}/workspaces/{ws}/agent/sessions/{sid}/signals  (NDJSON 流)
"""

import asyncio
import time
from collections.abc import AsyncIterator

import httpx
import pydantic
import structlog

from .exceptions import ProvisionError, SubmitError
from .models import AgentSignal, TaskPayload

log = structlog.get_logger()

# 健康检查超时（硬编码，应快速响应）
HEALTH_CHECK_TIMEOUT_S = 5

_READY_STATUSES = {"running"}
_DEAD_STATUSES = {"error", "stopped", "deleted"}


def _headers(api_key: str) -> dict[str, str]:
    if not api_key:
        return {}
    return {"Authorization": f"Bearer {api_key}"}


class HttpAgentSessionClient:
    """Agent 会话 HTTP 客户端"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            base_url: agent 会话服务基础 URL
            api_key: 访问密钥
            timeout_s: 单次请求超时（秒）；信号流只限制连接阶段
            transport: 自定义传输层（测试注入 MockTransport）
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._transport = transport

    def _client(self, timeout: httpx.Timeout | float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=_headers(self._api_key),
            timeout=self._timeout_s if timeout is None else timeout,
            transport=self._transport,
        )

    def _session_path(self, workspace_id: str, session_id: str | None = None) -> str:
        path = f"/workspaces/{workspace_id}/agent/sessions"
        return path if session_id is None else f"{path}/{session_id}"

    async def submit(self, workspace_id: str, payload: TaskPayload) -> str:
        """提交任务，返回 session_id

        Raises:
            SubmitError: 连接失败、超时、非 2xx 响应或响应缺少 session_id
        """
        start_time = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.post(
                    self._session_path(workspace_id),
                    json=payload.model_dump(mode="json"),
                )
                resp.raise_for_status()
                session_id = resp.json().get("session_id")
        except httpx.HTTPStatusError as e:
            raise SubmitError(workspace_id, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SubmitError(workspace_id, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise SubmitError(workspace_id, "invalid response body") from e

        if not session_id:
            raise SubmitError(workspace_id, "response missing session_id")

        log.info(
            "agent_session_submitted",
            workspace_id=workspace_id,
            session_id=session_id,
            task_id=payload.task_id,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
        return session_id

    async def stop(self, workspace_id: str, session_id: str) -> None:
        """尽力停止会话；失败只记录日志"""
        try:
            async with self._client() as client:
                resp = await client.post(f"{self._session_path(workspace_id, session_id)}/stop")
                resp.raise_for_status()
        except httpx.HTTPError as e:
            log.warning(
                "agent_session_stop_failed",
                workspace_id=workspace_id,
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        log.info("agent_session_stopped", workspace_id=workspace_id, session_id=session_id)

    async def watch(self, workspace_id: str, session_id: str) -> AsyncIterator[AgentSignal]:
        """逐行读取 NDJSON 信号流；无法解析的行跳过

        Raises:
            httpx.HTTPError: 连接失败或非 2xx 响应，由执行监控记录
        """
        timeout = httpx.Timeout(self._timeout_s, read=None)
        async with self._client(timeout) as client:
            async with client.stream(
                "GET", f"{self._session_path(workspace_id, session_id)}/signals"
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        yield AgentSignal.model_validate_json(line)
                    except pydantic.ValidationError:
                        log.warning(
                            "agent_signal_unparseable",
                            workspace_id=workspace_id,
                            session_id=session_id,
                            line=line[:200],
                        )

    async def health_check(self) -> bool:
        """检查 agent 服务可达性，不抛出异常"""
        try:
            async with self._client(HEALTH_CHECK_TIMEOUT_S) as client:
                resp = await client.get("/health")
                return resp.status_code == 200
        except Exception as e:
            log.warning("agent_health_check_failed", error=str(e))
            return False


class HttpWorkspaceProvisioner:
    """Workspace 开机 HTTP 客户端，就绪状态通过轮询获得"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: int = 30,
        ready_timeout_s: int = 600,
        poll_interval_s: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._ready_timeout_s = ready_timeout_s
        self._poll_interval_s = poll_interval_s
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=_headers(self._api_key),
            timeout=self._timeout_s,
            transport=self._transport,
        )

    async def launch(
        self,
        project_id: str,
        branch_hint: str | None = None,
        size_hint: str | None = None,
    ) -> str:
        """请求开机，返回 workspace_id

        Raises:
            ProvisionError: 请求失败或响应缺少 workspace_id
        """
        body = {"project_id": project_id, "branch": branch_hint, "vm_size": size_hint}
        try:
            async with self._client() as client:
                resp = await client.post("/workspaces", json=body)
                resp.raise_for_status()
                workspace_id = resp.json().get("workspace_id")
        except httpx.HTTPError as e:
            raise ProvisionError(f"Workspace launch failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise ProvisionError("Workspace launch failed: invalid response body") from e

        if not workspace_id:
            raise ProvisionError("Workspace launch failed: response missing workspace_id")
        log.info("workspace_launched", project_id=project_id, workspace_id=workspace_id)
        return workspace_id

    async def wait_ready(self, workspace_id: str) -> None:
        """轮询直到 workspace 进入 running

        Raises:
            ProvisionError: workspace 进入失败状态、查询失败或超时
        """
        deadline = time.monotonic() + self._ready_timeout_s
        async with self._client() as client:
            while True:
                try:
                    resp = await client.get(f"/workspaces/{workspace_id}")
                    resp.raise_for_status()
                    status = resp.json().get("status")
                except (httpx.HTTPError, ValueError) as e:
                    raise ProvisionError(
                        f"Workspace {workspace_id} status check failed: {e}",
                        workspace_id=workspace_id,
                    ) from e

                if status in _READY_STATUSES:
                    log.info("workspace_ready", workspace_id=workspace_id)
                    return
                if status in _DEAD_STATUSES:
                    raise ProvisionError(
                        f"Workspace {workspace_id} entered {status}",
                        workspace_id=workspace_id,
                    )
                if time.monotonic() >= deadline:
                    raise ProvisionError(
                        f"Workspace {workspace_id} not ready after {self._ready_timeout_s}s",
                        workspace_id=workspace_id,
                    )
                await asyncio.sleep(self._poll_interval_s)
