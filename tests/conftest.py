# tests/conftest.py
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import asyncio
import base64
import json
import time

import pytest
import pytest_asyncio

from infra.http_client import HttpClient, HttpError
from trading.enums import Network
from trading.models import Credential, Identity, StarkKey
from trading.services.endpoints import Endpoints
from trading.services.key_manager import KeyManager

ETH_ADDR = "0x" + "ab" * 20
ROOT_ADDR = "0x4c1a2b3c4d5e6f70819"
ROOT_PRIV = "0x1234567890abcdef1234567890abcdef"
SUB_ADDR = ROOT_ADDR
SUB_PRIV = "0x0fedcba9876543210fedcba987654321"
CHAIN_ID = "PRIVATE_SN_POTC_SEPOLIA"


def make_jwt(exp: float, **claims) -> str:
    def seg(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")
    return f"{seg({'alg': 'ES256', 'typ': 'JWT'})}.{seg(dict(claims, exp=int(exp)))}.c2ln"


class FakeHttp:
    """
    Route table keyed by (METHOD, path). A route holds a list of responses
    (dict / Exception / callable(**kw)); the last one repeats.
    """

    def __init__(self, routes=None):
        self.routes = {k: list(v) if isinstance(v, list) else [v] for k, v in (routes or {}).items()}
        self.calls = []
        self.token_provider = None
        self.now_ms = int(time.time() * 1000)
        self.log = None

    def route(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def count(self, method, path=None):
        return sum(1 for m, p, _ in self.calls if m == method and (path is None or p == path))

    def server_time_ms(self):
        return self.now_ms

    def server_time_s(self):
        return self.now_ms // 1000

    def set_token_provider(self, provider):
        self.token_provider = provider

    async def _call(self, method, path, *, auth=False, **kw):
        if auth and self.token_provider is not None:
            kw["bearer"] = await self.token_provider()
        self.calls.append((method, path, kw))
        queue = self.routes.get((method, path))
        if not queue:
            raise HttpError(404, f"no route {method} {path}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item) and not isinstance(item, Exception):
            item = item(**kw)
            if asyncio.iscoroutine(item):
                item = await item
        if isinstance(item, Exception):
            raise item
        return item

    async def get_public(self, path, params=None):
        return await self._call("GET", path, params=params)

    async def post_signed(self, path, *, headers, json_body=None, retry=False):
        return await self._call("POST", path, headers=dict(headers), json_body=json_body)

    async def get_private(self, path, params=None):
        return await self._call("GET", path, params=params, auth=True)

    async def post_private(self, path, json_body, *, retry=False):
        return await self._call("POST", path, json_body=json_body, auth=True)

    async def put_private(self, path, json_body, *, retry=False):
        return await self._call("PUT", path, json_body=json_body, auth=True)

    async def delete_private(self, path, params=None, *, retry=False):
        return await self._call("DELETE", path, params=params, auth=True)


class FakeAuth:
    """AuthSession stand-in for engine / stream tests."""

    def __init__(self, token="jwt-token"):
        self.token = token
        self.ensure_calls = 0
        self.invalidations = 0
        self.credential = Credential(token=token, issued_at=time.time(), expires_at=time.time() + 300)

    async def ensure_valid(self):
        self.ensure_calls += 1
        return self.credential

    async def bearer(self):
        return (await self.ensure_valid()).token

    def invalidate(self):
        self.invalidations += 1


async def until(pred, timeout: float = 2.0, step: float = 0.005):
    """Poll pred() until true; fail the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(step)


@pytest.fixture
def identity():
    return Identity(eth_address=ETH_ADDR, root=StarkKey(ROOT_ADDR, ROOT_PRIV))


@pytest.fixture
def subkey():
    return StarkKey(SUB_ADDR, SUB_PRIV)


@pytest.fixture
def keys(identity, subkey):
    return KeyManager(identity, subkey, CHAIN_ID)


@pytest.fixture
def endpoints():
    return Endpoints(
        network=Network.TESTNET,
        rest_base="https://api.testnet.paradex.trade/v1",
        ws_url="wss://ws.api.testnet.paradex.trade/v1",
        chain_id=CHAIN_ID,
    )


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def fake_auth():
    return FakeAuth()


def frame(channel: str, data) -> str:
    return json.dumps({"jsonrpc": "2.0", "method": "subscription",
                       "params": {"channel": channel, "data": data}})


class FakeWS:
    """In-memory websocket: records sent JSON-RPC requests and auto-acks them."""

    _DROP = object()
    _EOF = object()

    def __init__(self, reject=(), send_delay: float = 0.0):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False
        self.reject = set(reject)
        self.send_delay = send_delay

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is self._DROP:
            raise ConnectionResetError("connection dropped")
        if item is self._EOF:
            raise StopAsyncIteration
        return item

    async def send(self, text: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.closed:
            raise ConnectionError("socket closed")
        msg = json.loads(text)
        self.sent.append(msg)
        channel = (msg.get("params") or {}).get("channel")
        if channel in self.reject:
            reply = {"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32600, "message": "invalid channel"}}
        else:
            reply = {"jsonrpc": "2.0", "id": msg["id"], "result": {"channel": channel}}
        self.inbox.put_nowait(json.dumps(reply))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(self._EOF)

    def push(self, raw) -> None:
        self.inbox.put_nowait(raw)

    def drop(self) -> None:
        self.inbox.put_nowait(self._DROP)

    def requests(self, method=None):
        return [(m["method"], (m.get("params") or {}).get("channel")) for m in self.sent
                if method is None or m["method"] == method]


class FakeConnect:
    """Stand-in for websockets.connect; `fail` = number of refused attempts (-1: always)."""

    def __init__(self, fail: int = 0, reject=(), send_delay: float = 0.0):
        self.fail = fail
        self.reject = reject
        self.send_delay = send_delay
        self.attempts = 0
        self.sockets = []

    def __call__(self, url, **kw):
        self.attempts += 1
        if self.fail < 0 or self.attempts <= self.fail:
            raise ConnectionRefusedError("refused")
        ws = FakeWS(self.reject, self.send_delay)
        self.sockets.append(ws)
        return ws


@pytest_asyncio.fixture
async def http_client():
    """Real HttpClient against the testnet base url (requests mocked with aioresponses)."""
    async with HttpClient("https://api.testnet.paradex.trade/v1", max_attempts=3, backoff_ms=1) as client:
        yield client
