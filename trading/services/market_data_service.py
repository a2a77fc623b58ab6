# trading/services/market_data_service.py
import asyncio
import contextlib
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from infra.ws_client import ReconnectExhausted, WSClient
from trading.config import StreamingSettings
from trading.enums import Phase, SubscriptionState, Visibility
from trading.errors import BackpressureExceeded, CredentialExpired, DecodeError, NetworkError
from trading.event_bus import (
    EventBus, TOPIC_ACCOUNT, TOPIC_DECODE_ERROR, TOPIC_FILL, TOPIC_GAP,
    TOPIC_MARKET, TOPIC_ORDER_EVENT, TOPIC_SUBSCRIPTION,
)
from trading.models import DecodeErrorEvent, GapEvent, StreamEvent, Subscription
from trading.services.stream_handlers import PRIVATE_PREFIXES, channel_prefix, decode_event, parse_frame, seq_of
from utils.logger import logger as default_logger

_TOPIC_BY_KIND = {"orders": TOPIC_ORDER_EVENT, "fills": TOPIC_FILL}


class _Connection:
    """One websocket per visibility plus its inbound queue and drain task."""

    def __init__(self, visibility: Visibility, ws: WSClient, queue: asyncio.Queue, max_pending: int):
        self.visibility = visibility
        self.ws = ws
        self.queue = queue
        self.subs: Dict[str, Subscription] = {}       # registration order == re-issue order
        self.sent: set = set()                        # channels subscribed on the current socket
        self.pending: Deque[Tuple[str, str]] = deque()
        self.max_pending = max_pending
        self.requests: Dict[int, Tuple[str, str]] = {}
        self.reader_task: Optional[asyncio.Task] = None
        self.drain_task: Optional[asyncio.Task] = None
        self.ready = False
        self.decode_errors = 0


class MarketDataSubscriber:
    """
    Public / private JSON-RPC streams.

    Frames of one connection are decoded and delivered in arrival order by a
    single drain task; decoded events go to the subscription handler and to
    the EventBus (orders / fills / account / market topics).
    """

    def __init__(self, ws_url: str, event_bus: EventBus, auth=None,
                 settings: Optional[StreamingSettings] = None, logger=None,
                 *, connect: Optional[Callable[..., Any]] = None, initial_jitter_s: float = 0.5):
        self.ws_url = ws_url
        self._bus = event_bus
        self._auth = auth
        self.settings = settings or StreamingSettings()
        self.log = logger or default_logger
        self._connect = connect
        self._initial_jitter_s = initial_jitter_s
        self._conns: Dict[Visibility, _Connection] = {}
        self._closed = False
        self.fatal_error: Optional[BaseException] = None
        self.failed = asyncio.Event()

    # ---- connections -----------------------------------------------------------
    def _connection(self, visibility: Visibility) -> _Connection:
        conn = self._conns.get(visibility)
        if conn is not None:
            return conn
        s = self.settings
        ws = WSClient(
            self.ws_url,
            inst_name=visibility.value,
            on_open=lambda w, v=visibility: self._on_open(v),
            on_close=lambda w, err, v=visibility: self._on_close(v, err),
            ping_interval=s.ping_interval_s,
            reconnect_base_s=s.reconnect_base_s,
            reconnect_cap_s=s.reconnect_cap_s,
            max_reconnect_attempts=s.max_reconnect_attempts,
            initial_jitter_s=self._initial_jitter_s,
            connect=self._connect,
        )
        q: asyncio.Queue = asyncio.Queue(maxsize=s.inbound_queue_size)
        # blocking put: a full queue stalls the socket reader instead of dropping frames
        ws.bind_queue(q)
        conn = _Connection(visibility, ws, q, s.max_pending_commands)
        conn.reader_task = asyncio.create_task(ws.run_forever(), name=f"ws-{visibility.value}")
        conn.reader_task.add_done_callback(lambda t, c=conn: self._on_reader_done(c, t))
        conn.drain_task = asyncio.create_task(self._drain(conn), name=f"drain-{visibility.value}")
        self._conns[visibility] = conn
        self.log.info(f"[Stream] {visibility.value} connection created url={self.ws_url}")
        return conn

    def _on_reader_done(self, conn: _Connection, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, ReconnectExhausted):
            err = NetworkError(str(exc), phase=Phase.STREAMING, connection=conn.visibility.value)
        else:
            err = NetworkError(f"stream reader crashed: {exc!r}", phase=Phase.STREAMING,
                               connection=conn.visibility.value)
        self.log.error(f"[Stream] {conn.visibility.value} connection failed: {err}")
        for sub in conn.subs.values():
            self._set_state(sub, SubscriptionState.CLOSED)
        if self.fatal_error is None:
            self.fatal_error = err
        self.failed.set()

    async def _on_open(self, visibility: Visibility) -> None:
        conn = self._conns[visibility]
        conn.sent.clear()
        conn.requests.clear()
        if visibility is Visibility.PRIVATE:
            if self._auth is None:
                raise CredentialExpired("private stream requires an auth session")
            bearer = await self._auth.bearer()
            req_id = await conn.ws.rpc("auth", {"bearer": bearer})
            conn.requests[req_id] = ("auth", "")
        # buffered commands are folded into the registrations; re-issue all of them.
        # subscribe()/unsubscribe() may run while a send is suspended, so repeat
        # until the socket matches the registrations with no await in between.
        while True:
            missing = [ch for ch in conn.subs if ch not in conn.sent]
            stale = [ch for ch in conn.sent if ch not in conn.subs]
            if not missing and not stale:
                break
            for channel in missing:
                if channel in conn.subs and channel not in conn.sent:
                    await self._send(conn, "subscribe", channel)
            for channel in stale:
                if channel in conn.sent and channel not in conn.subs:
                    await self._send(conn, "unsubscribe", channel)
        conn.ready = True
        if conn.pending:
            self.log.info(f"[Stream] {visibility.value} flushed {len(conn.pending)} buffered command(s)")
        conn.pending.clear()

    def _on_close(self, visibility: Visibility, err: Optional[BaseException]) -> None:
        conn = self._conns.get(visibility)
        if conn is None:
            return
        conn.ready = False
        conn.sent.clear()
        if self._closed:
            return
        for sub in conn.subs.values():
            if sub.state is SubscriptionState.ACTIVE:
                self._set_state(sub, SubscriptionState.DEGRADED)
        self.log.warning(f"[Stream] {visibility.value} connection lost ({err!r}), reconnecting")

    async def _send(self, conn: _Connection, method: str, channel: str) -> None:
        req_id = await conn.ws.rpc(method, {"channel": channel})
        conn.requests[req_id] = (method, channel)
        if method == "subscribe":
            conn.sent.add(channel)
        else:
            conn.sent.discard(channel)

    def _buffer(self, conn: _Connection, method: str, channel: str) -> None:
        if len(conn.pending) >= conn.max_pending:
            raise BackpressureExceeded(
                "pending command buffer full", connection=conn.visibility.value,
                channel=channel, limit=conn.max_pending,
            )
        conn.pending.append((method, channel))

    async def _command(self, conn: _Connection, method: str, channel: str) -> None:
        if conn.ready and conn.ws.is_open:
            try:
                await self._send(conn, method, channel)
                return
            except (ConnectionError, OSError) as e:
                self.log.warning(f"[Stream] send {method} {channel} failed, buffering: {e!r}")
        self._buffer(conn, method, channel)

    # ---- public API --------------------------------------------------------------
    async def subscribe(self, channel: str, visibility: Optional[Visibility] = None,
                        handler: Optional[Callable[[StreamEvent], None]] = None) -> Subscription:
        if self._closed:
            raise NetworkError("subscriber is stopped", phase=Phase.STREAMING)
        if visibility is None:
            visibility = Visibility.PRIVATE if channel_prefix(channel) in PRIVATE_PREFIXES else Visibility.PUBLIC
        if visibility is Visibility.PRIVATE:
            if self._auth is None:
                raise CredentialExpired("private channel without an auth session", channel=channel)
            await self._auth.ensure_valid()

        conn = self._connection(visibility)
        existing = conn.subs.get(channel)
        if existing is not None:
            if handler is not None:
                existing.handler = handler
            return existing

        sub = Subscription(channel=channel, visibility=visibility, handler=handler)
        conn.subs[channel] = sub
        try:
            await self._command(conn, "subscribe", channel)
        except BackpressureExceeded:
            conn.subs.pop(channel, None)
            self._set_state(sub, SubscriptionState.CLOSED)
            raise
        self.log.info(f"[Stream] subscribe {channel} ({visibility.value})")
        return sub

    async def unsubscribe(self, channel: str) -> None:
        for conn in self._conns.values():
            sub = conn.subs.pop(channel, None)
            if sub is None:
                continue
            self._set_state(sub, SubscriptionState.CLOSED)
            if conn.ready and conn.ws.is_open and channel in conn.sent:
                try:
                    await self._send(conn, "unsubscribe", channel)
                except (ConnectionError, OSError) as e:
                    self.log.warning(f"[Stream] unsubscribe {channel} not sent: {e!r}")
            self.log.info(f"[Stream] unsubscribe {channel}")
            return

    def subscriptions(self) -> List[Subscription]:
        return [replace(s) for c in self._conns.values() for s in c.subs.values()]

    def get(self, channel: str) -> Optional[Subscription]:
        for c in self._conns.values():
            if channel in c.subs:
                return c.subs[channel]
        return None

    def pending_commands(self, visibility: Visibility) -> int:
        conn = self._conns.get(visibility)
        return len(conn.pending) if conn else 0

    # ---- inbound -------------------------------------------------------------------
    async def _drain(self, conn: _Connection) -> None:
        while True:
            raw = await conn.queue.get()
            try:
                self._dispatch(conn, raw)
            except DecodeError as e:
                conn.decode_errors += 1
                text = raw if isinstance(raw, str) else repr(raw)
                self.log.warning(f"[Stream] {conn.visibility.value} decode error: {e}")
                self._bus.publish(TOPIC_DECODE_ERROR, DecodeErrorEvent(conn.visibility, str(e), text[:512]))
            except Exception:
                self.log.exception(f"[Stream] {conn.visibility.value} dispatch failed")
            finally:
                conn.queue.task_done()

    def _dispatch(self, conn: _Connection, raw: Any) -> None:
        msg = parse_frame(raw)
        if msg.get("method") == "subscription":
            params = msg.get("params")
            if not isinstance(params, dict) or not params.get("channel"):
                raise DecodeError("subscription frame without channel")
            self._on_data(conn, str(params["channel"]), params.get("data"))
            return
        if "id" in msg and ("result" in msg or "error" in msg):
            self._on_response(conn, msg)
            return
        self.log.debug(f"[Stream] {conn.visibility.value} ignored frame: {msg}")

    def _on_response(self, conn: _Connection, msg: Dict[str, Any]) -> None:
        method, channel = conn.requests.pop(msg.get("id"), ("", ""))
        if "error" in msg and msg["error"] is not None:
            self.log.error(f"[Stream] {conn.visibility.value} {method or 'request'} {channel} rejected: {msg['error']}")
            if method == "subscribe":
                sub = conn.subs.pop(channel, None)
                if sub is not None:
                    self._set_state(sub, SubscriptionState.CLOSED)
            return
        if method == "subscribe":
            sub = conn.subs.get(channel)
            if sub is not None:
                sub.acked = True
                self._set_state(sub, SubscriptionState.ACTIVE)
        elif method == "auth":
            self.log.info(f"[Stream] {conn.visibility.value} connection authenticated")

    def _on_data(self, conn: _Connection, channel: str, data: Any) -> None:
        sub = conn.subs.get(channel)
        if sub is None:
            self.log.debug(f"[Stream] frame for unregistered channel {channel}")
            return
        kind, payload = decode_event(channel, data)
        sub.messages += 1
        if sub.state is not SubscriptionState.ACTIVE:
            self._set_state(sub, SubscriptionState.ACTIVE)

        seq = seq_of(payload)
        if seq is not None:
            if sub.last_seq is not None and seq > sub.last_seq + 1:
                gap = GapEvent(channel=channel, expected=sub.last_seq + 1, received=seq)
                self.log.warning(f"[Stream] gap on {channel}: expected {gap.expected}, got {seq}")
                self._bus.publish(TOPIC_GAP, gap)
            if sub.last_seq is None or seq > sub.last_seq:
                sub.last_seq = seq

        event = StreamEvent(channel=channel, kind=kind, data=payload, connection=conn.visibility)
        if sub.handler is not None:
            try:
                sub.handler(event)
            except Exception:
                self.log.exception(f"[Stream] handler for {channel} failed")
        topic = _TOPIC_BY_KIND.get(kind)
        if topic is None:
            topic = TOPIC_ACCOUNT if conn.visibility is Visibility.PRIVATE else TOPIC_MARKET
        self._bus.publish(topic, event)

    def _set_state(self, sub: Subscription, state: SubscriptionState) -> None:
        if sub.state is state:
            return
        sub.state = state
        self._bus.publish(TOPIC_SUBSCRIPTION, sub)

    # ---- teardown ------------------------------------------------------------------
    async def stop(self, timeout: float = 5.0) -> bool:
        """Unsubscribe everything, close both sockets; True when all closed cleanly."""
        self._closed = True
        clean = True
        for conn in list(self._conns.values()):
            for channel in list(conn.subs):
                try:
                    await asyncio.wait_for(self.unsubscribe(channel), timeout=timeout)
                except asyncio.TimeoutError:
                    clean = False
            await conn.ws.stop()
            for task in (conn.reader_task, conn.drain_task):
                if task is None:
                    continue
                if task.done():
                    if not task.cancelled() and task.exception() is not None:
                        clean = False
                    continue
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await asyncio.wait_for(task, timeout=timeout)
        self.log.info(f"[Stream] stopped (clean={clean})")
        return clean
