"""按 key 分配的 asyncio 锁

任务级锁串行化同一任务的所有修改；项目级锁保护依赖边的环检测 + 插入；
workspace 级锁保证同一 workspace 同一时刻只绑定一个活跃任务。
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """key -> asyncio.Lock 注册表

    每个 key 记录持有 + 等待者数量，归零时移除锁对象，注册表大小只与
    正在进行的操作数有关。登记与注销之间没有 await，不需要额外的保护锁。
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)
