"""gateway 测试配置 -- 注入替身后的 FastAPI app + httpx AsyncClient

不走 lifespan：直接用 init_app_state 装配临时 Store 与 agent 替身。
"""

from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from taskrelay.gateway.main import create_app, init_app_state


@pytest_asyncio.fixture
async def app(stores, provisioner, agent_client):
    """创建测试用 FastAPI app 实例"""
    application = create_app()
    init_app_state(application, stores, provisioner, agent_client)
    yield application
    await application.state.monitor.shutdown()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """提供 httpx AsyncClient 用于测试"""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def create_ready_task(client):
    """通过 API 创建任务并推进到 ready"""

    async def _create(title: str = "Implement feature", project_id: str = "proj-1", **body):
        resp = await client.post(
            f"/api/projects/{project_id}/tasks", json={"title": title, **body}
        )
        assert resp.status_code == 201, resp.text
        task_id = resp.json()["task_id"]
        resp = await client.post(
            f"/api/projects/{project_id}/tasks/{task_id}/status",
            json={"to_status": "ready"},
        )
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _create
