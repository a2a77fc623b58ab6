# infra/http_client.py
from __future__ import annotations

import aiohttp
import asyncio
import json
import random
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

from utils.logger import logger as default_logger

JSON_SEPARATORS = (",", ":")

TokenProvider = Callable[[], Awaitable[str]]


class HttpError(Exception):
    def __init__(self, status: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.payload = payload or {}


def is_transport_error(e: Exception) -> bool:
    """429, 5xx and the synthetic 599 (connection/timeout) are worth one more try."""
    return isinstance(e, HttpError) and (e.status >= 500 or e.status == 429)


class ParadexApiError(Exception):
    """Structured venue rejection: {"error": "<CODE>", "message": "..."}."""

    def __init__(self, status: int, code: str, msg: str, payload: dict | None = None):
        self.status = status
        self.code = code
        self.msg = msg
        self.payload = payload or {}
        super().__init__(f"Paradex API status={status}, error={code}, message={msg}")


def _json_dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=JSON_SEPARATORS, ensure_ascii=False)

def _build_query(params: Optional[Mapping[str, Any]]) -> str:
    if not params:
        return ""
    return "?" + urlencode(params, doseq=True, safe=":/")


class HttpClient:
    def __init__(self,
                 base_url: str,
                 logger=None,
                 *,
                 timeout_ms: int = 5000,
                 max_attempts: int = 3,
                 backoff_ms: int = 200,
                 session: Optional[aiohttp.ClientSession] = None,
                 token_provider: Optional[TokenProvider] = None,
                 ) -> None:
        self.base_url = base_url.rstrip("/")
        self.log = logger or default_logger
        self.session = session
        self._owned_session = session is None

        self.timeout_ms = int(timeout_ms)
        self.max_attempts = int(max_attempts)
        self.backoff_ms = int(backoff_ms)

        self._token_provider = token_provider
        self.clock_offset_ms: int = 0

        self.log.debug(f"HttpClient init base_url={self.base_url} timeout_ms={self.timeout_ms}")

    # ---- async context manager ----------------------------------------------------
    async def __aenter__(self) -> "HttpClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or (self._owned_session and self.session.closed):
            timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000.0)
            self.session = aiohttp.ClientSession(timeout=timeout, raise_for_status=False, trust_env=True)
            self._owned_session = True
        return self.session

    async def close(self) -> None:
        if self._owned_session and self.session is not None and not self.session.closed:
            await self.session.close()

    def set_token_provider(self, provider: TokenProvider) -> None:
        """Bearer source for private requests (AuthSession.bearer)."""
        self._token_provider = provider

    # ---- 时间同步 -----------------------------------------------------------------
    async def sync_server_time(self, path: str = "/system/time") -> int:
        """Query the venue clock and store the offset (server - local, ms)."""
        resp = await self.request("GET", path)
        try:
            ts_server_ms = int(resp["server_time"])
        except (KeyError, TypeError, ValueError) as e:
            raise HttpError(599, f"unexpected server time payload: {resp}") from e
        local_ms = int(time.time() * 1000)
        self.clock_offset_ms = ts_server_ms - local_ms
        self.log.info(f"Server time synced: offset_ms={self.clock_offset_ms}")
        return self.clock_offset_ms

    def server_time_ms(self) -> int:
        return int(time.time() * 1000) + self.clock_offset_ms

    def server_time_s(self) -> int:
        return self.server_time_ms() // 1000

    async def request(
            self,
            method: str,
            path: str,
            *,
            params: Optional[Mapping[str, Any]] = None,
            json_body: Optional[Mapping[str, Any]] = None,
            auth: bool = False,
            headers: Optional[Mapping[str, str]] = None,
            timeout_ms: Optional[int] = None,
            retry: bool = True,
        ) -> Dict[str, Any]:
        """
        Single request entry.
        - path: relative to base_url, starts with "/"
        - auth: attach "Authorization: Bearer <jwt>" from the token provider
        - retry: exponential backoff on 429/5xx and transport errors
        Raises ParadexApiError for structured venue errors, HttpError otherwise.
        """
        assert path.startswith("/"), "path must start with /"
        method = method.upper()
        url = self.base_url + path + _build_query(params)
        body_str = _json_dumps_compact(json_body) if json_body is not None else ""
        req_headers = {
            "Content-Type": "application/json", "Accept": "application/json"
        }
        if headers:
            req_headers.update(headers)
        if auth:
            if self._token_provider is None:
                raise HttpError(401, "private request without a token provider")
            req_headers["Authorization"] = f"Bearer {await self._token_provider()}"

        timeout_ctx = aiohttp.ClientTimeout(total=timeout_ms / 1000.0) if timeout_ms else None
        session = self._ensure_session()

        attempt = 0
        while True:
            attempt += 1
            try:
                async with session.request(
                    method,
                    url,
                    data=body_str if body_str else None,
                    headers=req_headers,
                    timeout=timeout_ctx,
                ) as resp:
                    text = await resp.text()
                    status = resp.status
                    payload = self._parse(text)

                    if status >= 400:
                        if retry and (status >= 500 or status == 429) and attempt < self.max_attempts:
                            await self._sleep_backoff(attempt)
                            continue
                        if isinstance(payload, dict) and payload.get("error"):
                            raise ParadexApiError(status, str(payload["error"]),
                                                  str(payload.get("message", "")), payload)
                        raise HttpError(status, text[:256])

                    if payload is None:
                        if text:
                            raise HttpError(status, f"invalid json: {text[:256]}")
                        return {}
                    return payload
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if retry and attempt < self.max_attempts:
                    self.log.warning(f"Network error: {e!r} when requesting {method} {path}, retrying...")
                    await self._sleep_backoff(attempt)
                    continue
                raise HttpError(599, f"Network error: {e!r}") from e

    @staticmethod
    def _parse(text: str) -> Optional[Dict[str, Any]]:
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return None

    async def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_ms * (2 ** (attempt - 1))
        jitter = random.randint(0, self.backoff_ms)
        await asyncio.sleep((base + jitter) / 1000.0)

    # ---- 便捷包装 -----------------------------------------------------------------
    async def get_public(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", path, params=params)

    async def post_signed(self, path: str, *, headers: Mapping[str, str],
                          json_body: Optional[Mapping[str, Any]] = None,
                          retry: bool = False) -> Dict[str, Any]:
        """Unauthenticated POST carrying StarkNet signature headers (onboarding, auth)."""
        return await self.request("POST", path, json_body=json_body, headers=headers, retry=retry)

    async def get_private(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", path, params=params, auth=True)

    async def post_private(self, path: str, json_body: Mapping[str, Any], *, retry: bool = False) -> Dict[str, Any]:
        return await self.request("POST", path, json_body=json_body, auth=True, retry=retry)

    async def put_private(self, path: str, json_body: Mapping[str, Any], *, retry: bool = False) -> Dict[str, Any]:
        return await self.request("PUT", path, json_body=json_body, auth=True, retry=retry)

    async def delete_private(self, path: str, params: Optional[Mapping[str, Any]] = None,
                             *, retry: bool = False) -> Dict[str, Any]:
        return await self.request("DELETE", path, params=params, auth=True, retry=retry)
