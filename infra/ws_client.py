# infra/ws_client.py
from utils.logger import logger
import contextlib
import asyncio, json, random, websockets
from typing import Dict, Any, Callable, Awaitable, Optional
from websockets.exceptions import InvalidStatus, ConnectionClosed

Json = Dict[str, Any]


class ReconnectExhausted(ConnectionError):
    """Consecutive reconnect attempts exceeded max_reconnect_attempts."""


class WSClient:
    """
    JSON-RPC 2.0 websocket connection with reconnect + backoff.

    Raw frames are pushed, in arrival order, into the bound queue; decoding
    belongs to the consumer. `on_open` runs after every (re)connect before
    any frame is read, `on_close` after every drop.
    """
    def __init__(self,
        url: str,
        *,
        inst_name: str = "",
        on_open: Optional[Callable[["WSClient"], Awaitable[None]]] = None,
        on_close: Optional[Callable[["WSClient", Optional[BaseException]], None]] = None,
        ping_interval: float = 20,
        reconnect_base_s: float = 1.0,
        reconnect_cap_s: float = 20,
        max_reconnect_attempts: int = 12,
        initial_jitter_s: float = 0.5,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.url = url
        self.inst_name = inst_name
        self.ping_interval = ping_interval
        self.reconnect_base_s = reconnect_base_s
        self.reconnect_cap_s = reconnect_cap_s
        self.max_reconnect_attempts = max_reconnect_attempts
        self.initial_jitter_s = initial_jitter_s
        self._on_open = on_open
        self._on_close = on_close
        self._connect = connect or websockets.connect

        self._ws = None
        self._stop = False
        self._next_id = 0
        self.generation = 0         # number of successful opens
        self.retry = 0

        self._q: Optional[asyncio.Queue] = None

        logger.info(f"WSClient {inst_name} init url={url} ping_interval={ping_interval}s "
                    f"reconnect_cap_s={reconnect_cap_s} max_reconnect_attempts={max_reconnect_attempts}")

    def bind_queue(self, q: asyncio.Queue):
        self._q = q

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def send_json(self, payload: Json) -> None:
        if self._ws is None:
            raise ConnectionError(f"WS {self.inst_name} is not connected")
        await self._ws.send(json.dumps(payload))

    async def rpc(self, method: str, params: Optional[Json] = None) -> int:
        """Send a JSON-RPC request and return its id (the answer arrives on the queue)."""
        self._next_id += 1
        req_id = self._next_id
        await self.send_json({"jsonrpc": "2.0", "method": method, "params": params or {}, "id": req_id})
        return req_id

    def backoff_s(self, retry: int) -> float:
        backoff = min(self.reconnect_cap_s, self.reconnect_base_s * 2 ** min(retry - 1, 10))
        return backoff * random.uniform(0.8, 1.3)

    async def run_forever(self):
        self.retry = 0
        while not self._stop:
            err: Optional[BaseException] = None
            opened = False
            try:
                if self.retry:
                    await asyncio.sleep(self.backoff_s(self.retry))
                elif self.initial_jitter_s:
                    await asyncio.sleep(random.uniform(0.0, self.initial_jitter_s))
                if self._stop:
                    break

                logger.info(f"WS {self.inst_name} connect: connecting to {self.url} (retry={self.retry})")
                async with self._connect(self.url, ping_interval=self.ping_interval, close_timeout=10) as ws:
                    self._ws = ws
                    opened = True
                    self.generation += 1
                    logger.info(f"WS {self.inst_name} connect: connected (generation={self.generation})")
                    if self._on_open:
                        await self._on_open(self)
                    self.retry = 0

                    # main read loop
                    async for msg in ws:
                        await self._q_put(msg)
                if not self._stop:
                    logger.warning(f"WS {self.inst_name} closed by server")
            except asyncio.CancelledError:
                raise
            except InvalidStatus as e:
                err = e
                code = getattr(getattr(e, "response", None), "status_code", None)
                logger.warning(f"WS {self.inst_name} handshake rejected: HTTP {code}")
            except (ConnectionClosed, ConnectionError, OSError, asyncio.TimeoutError) as e:
                err = e
                logger.warning(f"WS {self.inst_name} connection closed: {type(e).__name__} ({e})")
            except Exception as e:
                err = e
                logger.exception(f"WS {self.inst_name} loop: exception")
            finally:
                ws, self._ws = self._ws, None
                if ws is not None:
                    with contextlib.suppress(Exception):
                        await ws.close()
                if opened:
                    logger.info(f"WS {self.inst_name} close: websocket closed")
                    if self._on_close:
                        self._on_close(self, err)

            if self._stop:
                break
            self.retry += 1
            if self.max_reconnect_attempts and self.retry > self.max_reconnect_attempts:
                raise ReconnectExhausted(
                    f"WS {self.inst_name}: {self.retry - 1} consecutive reconnect attempts failed"
                ) from err

    async def _q_put(self, item):
        if self._q is not None:
            await self._q.put(item)

    async def stop(self):
        self._stop = True
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
            logger.info(f"WS {self.inst_name} stop: websocket closed")
