# infra/__init__.py
from __future__ import annotations

import asyncio
import contextlib
from typing import Protocol, Mapping, Any, Optional, Dict, List

from infra.http_client import HttpClient, HttpError, ParadexApiError
from utils.logger import logger as default_logger

# ========== 1) 抽象端口：上层依赖这个，而非具体 HttpClient ==========
class HttpPort(Protocol):
    async def get_public(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]: ...
    async def post_signed(self, path: str, *, headers: Mapping[str, str],
                          json_body: Optional[Mapping[str, Any]] = None, retry: bool = False) -> Dict[str, Any]: ...
    async def get_private(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]: ...
    async def post_private(self, path: str, json_body: Mapping[str, Any], *, retry: bool = False) -> Dict[str, Any]: ...
    async def put_private(self, path: str, json_body: Mapping[str, Any], *, retry: bool = False) -> Dict[str, Any]: ...
    async def delete_private(self, path: str, params: Optional[Mapping[str, Any]] = None,
                             *, retry: bool = False) -> Dict[str, Any]: ...
    def server_time_ms(self) -> int: ...
    def server_time_s(self) -> int: ...


# ========== 2) 后台任务：周期对时 ==========
async def _periodic_time_sync(http: HttpClient, path: str, interval_sec: int = 600) -> None:
    while True:
        await asyncio.sleep(interval_sec)
        try:
            await http.sync_server_time(path)
        except asyncio.CancelledError:
            raise
        except (HttpError, ParadexApiError) as e:
            http.log.warning(f"Time sync failed: {e}")


# ========== 3) 轻量“容器”：启动/维护/关闭 ==========
class HttpContainer:
    """
    Owns the HttpClient, its periodic clock-sync task and graceful shutdown.
    The composition root holds it and injects `container.http` into services.
    """
    def __init__(self, http: HttpClient, tasks: List[asyncio.Task]) -> None:
        self.http = http
        self._tasks = tasks

    @classmethod
    async def start(cls,
                    base_url: str,
                    logger=None,
                    *,
                    timeout_ms: int = 5000,
                    max_attempts: int = 3,
                    backoff_ms: int = 200,
                    time_path: str = "/system/time",
                    time_sync_interval_sec: int = 600
                    ) -> "HttpContainer":
        http = HttpClient(base_url, logger=logger or default_logger, timeout_ms=timeout_ms,
                          max_attempts=max_attempts, backoff_ms=backoff_ms)
        try:
            await http.sync_server_time(time_path)
        except (HttpError, ParadexApiError) as e:
            http.log.warning(f"Initial time sync failed, using local clock: {e}")
        task_sync = asyncio.create_task(_periodic_time_sync(http, time_path, time_sync_interval_sec))
        return cls(http, tasks=[task_sync])

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
            with contextlib.suppress(Exception, asyncio.CancelledError):
                await t
        await self.http.close()
