# trading/services/order_engine.py
import asyncio
import copy
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from infra.http_client import HttpError, ParadexApiError
from trading.enums import KeyRole, OrderInstruction, OrderStatus, OrderType, Phase, Side
from trading.errors import (
    InvalidOrderSpec, InvalidOrderState, NetworkError, OrderRejected, TradingError,
)
from trading.event_bus import EventBus, TOPIC_FILL, TOPIC_ORDER_EVENT
from trading.idempotency import make_client_id, now_ms
from trading.models import (
    TERMINAL_STATUSES, Order, OrderChanges, OrderSpec, OrderUpdate, StreamEvent, TeardownReport,
)
from trading.services.key_manager import KeyManager
from trading.services.reconcile_service import ReconcileService, from_fill, from_venue_order
from trading.services.typed_data import build_modify_typed_data, build_order_typed_data
from trading.stores.order_store import OrderStore
from utils.logger import logger as default_logger


class OrderEngine:
    """
    Order commands (submit / modify / cancel) over REST, acknowledgments from
    the direct response and the private `orders` / `fills` streams.

    All state changes go through ReconcileService against one OrderStore;
    callers only ever receive copies.
    """

    def __init__(self, http_client, endpoints, keys: KeyManager, auth,
                 instruments=None, store: Optional[OrderStore] = None,
                 event_bus: Optional[EventBus] = None, logger=None,
                 *, clock_ms: Optional[Callable[[], int]] = None):
        self._http = http_client
        self._ep = endpoints
        self._signer = keys.signer(KeyRole.SUBKEY)
        self._chain_id = keys.chain_id
        self._auth = auth
        self._instruments = instruments
        self.store = store or OrderStore()
        self.log = logger or default_logger
        self.reconciler = ReconcileService(self.store, event_bus, self.log)
        self._clock_ms = clock_ms or now_ms

        self._accepting = True
        self._cancel_tasks: Dict[str, asyncio.Task] = {}
        self._waiters: Dict[str, List[Tuple[frozenset, asyncio.Future]]] = {}

        if event_bus is not None:
            event_bus.subscribe(TOPIC_ORDER_EVENT, self.on_order_event)
            event_bus.subscribe(TOPIC_FILL, self.on_fill_event)

    # ---- transport -----------------------------------------------------------
    async def _private(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Privileged REST call; a 401 invalidates the credential and retries once."""
        for attempt in (1, 2):
            await self._auth.ensure_valid()
            try:
                if method == "POST":
                    return await self._http.post_private(path, body)
                if method == "PUT":
                    return await self._http.put_private(path, body)
                return await self._http.delete_private(path, params)
            except (ParadexApiError, HttpError) as e:
                if e.status == 401 and attempt == 1:
                    self.log.warning(f"[Order] {method} {path} got 401, re-authenticating")
                    self._auth.invalidate()
                    continue
                raise

    # ---- state helpers -------------------------------------------------------
    def _apply(self, update: OrderUpdate) -> Optional[Order]:
        order = self.reconciler.apply(update)
        if order is not None:
            self._notify(order)
        return order

    def _move(self, order: Order, target: OrderStatus, source: str) -> None:
        self.reconciler.transition(order, target, source)
        self._notify(order)

    def _notify(self, order: Order) -> None:
        waiters = self._waiters.get(order.client_id)
        if not waiters:
            return
        keep = []
        for statuses, fut in waiters:
            if fut.done():
                continue
            if order.status in statuses:
                fut.set_result(copy.deepcopy(order))
            else:
                keep.append((statuses, fut))
        if keep:
            self._waiters[order.client_id] = keep
        else:
            self._waiters.pop(order.client_id, None)

    def _require(self, order_id: str) -> Order:
        order = self.store.resolve(order_id)
        if order is None:
            raise InvalidOrderState(f"unknown order {order_id}", order_id=order_id)
        return order

    def _validate(self, spec: OrderSpec) -> None:
        if not spec.market:
            raise InvalidOrderSpec("market is required")
        if not isinstance(spec.side, Side):
            raise InvalidOrderSpec(f"invalid side {spec.side!r}", market=spec.market)
        if not isinstance(spec.order_type, OrderType):
            raise InvalidOrderSpec(f"invalid order type {spec.order_type!r}", market=spec.market)
        if not isinstance(spec.instruction, OrderInstruction):
            raise InvalidOrderSpec(f"invalid instruction {spec.instruction!r}", market=spec.market)
        if spec.size is None or Decimal(spec.size) <= 0:
            raise InvalidOrderSpec("size must be > 0", market=spec.market, size=spec.size)
        if spec.order_type is OrderType.LIMIT:
            if spec.price is None or Decimal(spec.price) <= 0:
                raise InvalidOrderSpec("limit order requires a positive price", market=spec.market)

    async def _check_instrument(self, market: str, price: Optional[Decimal], size: Decimal) -> None:
        if self._instruments is None:
            return
        await self._instruments.get_or_refresh(market)
        self._instruments.validate(market, price, size)

    # ---- commands --------------------------------------------------------------
    async def submit(self, spec: OrderSpec) -> Order:
        if not self._accepting:
            raise InvalidOrderState("order engine is not accepting new orders")
        self._validate(spec)
        size = Decimal(spec.size)
        price = Decimal(spec.price) if spec.order_type is OrderType.LIMIT else None
        await self._check_instrument(spec.market, price, size)

        cid = spec.client_id or make_client_id()
        if self.store.get_by_cl(cid) is not None:
            raise InvalidOrderSpec(f"duplicate client id {cid}", client_id=cid)

        await self._auth.ensure_valid()

        order = Order(client_id=cid, market=spec.market, side=spec.side, order_type=spec.order_type,
                      size=size, price=price, instruction=spec.instruction, reduce_only=spec.reduce_only)
        self.store.add(order)

        ts = self._clock_ms()
        typed = build_order_typed_data(self._chain_id, timestamp_ms=ts, market=order.market, side=order.side,
                                       order_type=order.order_type, size=order.size, price=order.price)
        sig = self._signer.sign(typed)
        body = {
            "market": order.market,
            "side": order.side.value,
            "type": order.order_type.value,
            "size": str(order.size),
            "price": str(order.price) if order.price is not None else "0",
            "instruction": order.instruction.value,
            "client_id": cid,
            "signature": sig.header(),
            "signature_timestamp": ts,
        }
        if order.reduce_only:
            body["flags"] = ["REDUCE_ONLY"]

        self._move(order, OrderStatus.SUBMITTED, "local")
        self.log.info(f"[Order] submit {cid} {order.side.value} {order.size} {order.market} @ {order.price}")
        try:
            resp = await self._private("POST", self._ep.orders, body)
        except ParadexApiError as e:
            order.last_error = f"{e.code}: {e.msg}"
            self._apply(OrderUpdate(status=OrderStatus.REJECTED, source="response", client_id=cid))
            raise OrderRejected(f"order {cid} rejected: {e.msg or e.code}", order=copy.deepcopy(order),
                                code=e.code, client_id=cid) from e
        except HttpError as e:
            # outcome unknown: stays SUBMITTED until the stream tells
            order.last_error = str(e)
            raise NetworkError(f"submit {cid} failed: {e}", phase=Phase.ORDER,
                               client_id=cid, status=e.status) from e

        self._apply_response(order, resp)
        return copy.deepcopy(order)

    def _apply_response(self, order: Order, resp: Dict[str, Any], fallback: Optional[OrderUpdate] = None) -> None:
        if isinstance(resp, dict) and resp.get("id") and resp.get("status"):
            try:
                update = from_venue_order(resp, source="response")
            except ValueError as e:
                self.log.warning(f"[Order] {order.client_id} unreadable response status: {e}")
                return
            update.client_id = update.client_id or order.client_id
            self._apply(update)
        elif isinstance(resp, dict) and resp.get("id") and not order.server_id:
            self.store.bind_server_id(order, str(resp["id"]))
            if fallback is not None:
                self._apply(fallback)
        elif fallback is not None:
            self._apply(fallback)

    async def modify(self, order_id: str, changes: OrderChanges) -> Order:
        order = self._require(order_id)
        if order.status is not OrderStatus.OPEN:
            raise InvalidOrderState(f"modify requires an open order, {order.client_id} is {order.status.value}",
                                    client_id=order.client_id, status=order.status.value)
        if not self._accepting:
            raise InvalidOrderState("order engine is not accepting new commands")
        if changes.price is None and changes.size is None:
            raise InvalidOrderSpec("modify needs a new price or size", client_id=order.client_id)
        if not order.server_id:
            raise InvalidOrderState(f"{order.client_id} has no server id yet", client_id=order.client_id)

        new_price = Decimal(changes.price) if changes.price is not None else order.price
        new_size = Decimal(changes.size) if changes.size is not None else order.size
        if new_size <= 0 or (order.order_type is OrderType.LIMIT and (new_price is None or new_price <= 0)):
            raise InvalidOrderSpec("modified size/price must be positive", client_id=order.client_id)
        await self._check_instrument(order.market, new_price, new_size)
        await self._auth.ensure_valid()

        ts = self._clock_ms()
        typed = build_modify_typed_data(self._chain_id, timestamp_ms=ts, order_id=order.server_id,
                                        market=order.market, side=order.side, order_type=order.order_type,
                                        size=new_size, price=new_price)
        sig = self._signer.sign(typed)
        body = {
            "id": order.server_id,
            "market": order.market,
            "side": order.side.value,
            "type": order.order_type.value,
            "size": str(new_size),
            "price": str(new_price) if new_price is not None else "0",
            "signature": sig.header(),
            "signature_timestamp": ts,
        }

        order.pending_changes = OrderChanges(price=new_price, size=new_size)
        self._move(order, OrderStatus.MODIFY_PENDING, "local")
        path = self._ep.order_by_id.format(order_id=order.server_id)
        try:
            resp = await self._private("PUT", path, body)
        except (ParadexApiError, HttpError) as e:
            order.pending_changes = None
            order.last_error = str(e)
            if order.status is OrderStatus.MODIFY_PENDING:
                self._move(order, OrderStatus.OPEN, "response")
            if isinstance(e, ParadexApiError):
                raise OrderRejected(f"modify {order.client_id} rejected: {e.msg or e.code}",
                                    order=copy.deepcopy(order), code=e.code, client_id=order.client_id) from e
            raise NetworkError(f"modify {order.client_id} failed: {e}", phase=Phase.ORDER,
                               client_id=order.client_id, status=e.status) from e

        ack = OrderUpdate(status=OrderStatus.OPEN, source="response", client_id=order.client_id,
                          server_id=order.server_id, price=new_price, size=new_size)
        self._apply_response(order, resp, fallback=ack)
        return copy.deepcopy(order)

    async def cancel(self, order_id: str) -> OrderStatus:
        """Idempotent: at most one network cancel per order; terminal orders are a no-op."""
        order = self._require(order_id)
        if order.is_terminal:
            return order.status
        inflight = self._cancel_tasks.get(order.client_id)
        if inflight is None:
            if order.cancel_requested:
                return order.status
            order.cancel_requested = True
            inflight = asyncio.create_task(self._do_cancel(order))
            self._cancel_tasks[order.client_id] = inflight
        return await asyncio.shield(inflight)

    async def _do_cancel(self, order: Order) -> OrderStatus:
        if order.server_id:
            path = self._ep.order_by_id.format(order_id=order.server_id)
        else:
            path = self._ep.order_by_client_id.format(client_id=order.client_id)
        self.log.info(f"[Order] cancel {order.client_id} via {path}")
        try:
            await self._private("DELETE", path)
        except ParadexApiError as e:
            order.cancel_requested = False
            order.last_error = f"{e.code}: {e.msg}"
            raise OrderRejected(f"cancel {order.client_id} rejected: {e.msg or e.code}",
                                order=copy.deepcopy(order), code=e.code, client_id=order.client_id) from e
        except HttpError as e:
            order.cancel_requested = False
            order.last_error = str(e)
            raise NetworkError(f"cancel {order.client_id} failed: {e}", phase=Phase.ORDER,
                               client_id=order.client_id, status=e.status) from e
        finally:
            self._cancel_tasks.pop(order.client_id, None)

        self._apply(OrderUpdate(status=OrderStatus.CANCELLED, source="response",
                                client_id=order.client_id, server_id=order.server_id))
        return order.status

    # ---- stream input ----------------------------------------------------------
    def on_order_event(self, event: StreamEvent) -> None:
        data = event.data if isinstance(event, StreamEvent) else event
        try:
            update = from_venue_order(data, source="stream")
        except (ValueError, ArithmeticError, KeyError) as e:
            self.log.warning(f"[Order] unreadable order event: {e} data={data}")
            return
        self._apply(update)

    def on_fill_event(self, event: StreamEvent) -> None:
        fill = event.data if isinstance(event, StreamEvent) else event
        self._apply(from_fill(fill))

    # ---- views -------------------------------------------------------------------
    async def wait_for(self, order_id: str, statuses: Optional[Iterable[OrderStatus]] = None,
                       timeout: Optional[float] = None) -> Order:
        """Copy of the order once it reaches one of `statuses` (default: terminal)."""
        order = self._require(order_id)
        wanted = frozenset(statuses) if statuses else TERMINAL_STATUSES
        if order.status in wanted:
            return copy.deepcopy(order)
        fut = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(order.client_id, []).append((wanted, fut))
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        finally:
            if not fut.done():
                fut.cancel()

    def get(self, order_id: str) -> Optional[Order]:
        order = self.store.resolve(order_id)
        return copy.deepcopy(order) if order else None

    def snapshot(self) -> List[Order]:
        return self.store.snapshot()

    def open_orders(self) -> List[Order]:
        return [o for o in self.store.snapshot() if not o.is_terminal]

    @property
    def accepting(self) -> bool:
        return self._accepting

    def stop_accepting(self) -> None:
        self._accepting = False
        self.log.info("[Order] engine stopped accepting new commands")

    async def cancel_all_orders(self, market: Optional[str] = None) -> List[str]:
        """
        Venue bulk cancel: `DELETE /orders`, scoped with `?market=` when given.
        A successful response acknowledges every open order in scope; returns
        the client ids that ended CANCELLED locally.
        """
        scope = market or "all markets"
        params = {"market": market} if market else None
        self.log.info(f"[Order] bulk cancel {scope}")
        try:
            await self._private("DELETE", self._ep.orders, params=params)
        except ParadexApiError as e:
            raise OrderRejected(f"bulk cancel {scope} rejected: {e.msg or e.code}", code=e.code,
                                market=market) from e
        except HttpError as e:
            raise NetworkError(f"bulk cancel {scope} failed: {e}", phase=Phase.ORDER,
                               market=market, status=e.status) from e

        cancelled = []
        for o in self.store.all():
            if o.is_terminal or (market and o.market != market):
                continue
            self._apply(OrderUpdate(status=OrderStatus.CANCELLED, source="response",
                                    client_id=o.client_id, server_id=o.server_id))
            if o.status is OrderStatus.CANCELLED:
                cancelled.append(o.client_id)
        self.log.info(f"[Order] bulk cancel {scope} acknowledged {len(cancelled)} order(s)")
        return cancelled

    async def cancel_all(self, timeout: float = 10.0, *, bulk: bool = False) -> TeardownReport:
        """
        Cancel every non-terminal order once; whatever is still open at the
        deadline is unresolved. With `bulk`, one venue-wide cancel goes first
        and only the orders it did not settle are cancelled one by one.
        """
        report = TeardownReport()
        scope = [o for o in self.store.all() if not o.is_terminal]
        if not scope:
            return report

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        if bulk:
            try:
                await asyncio.wait_for(self.cancel_all_orders(), timeout=timeout / 2)
            except (TradingError, asyncio.TimeoutError) as e:
                self.log.warning(f"[Order] bulk cancel failed, cancelling one by one: {e!r}")
        targets = [o for o in scope if not o.is_terminal]

        async def _one(o: Order) -> None:
            try:
                await self.cancel(o.client_id)
            except TradingError as e:
                report.errors[o.client_id] = str(e)

        pending = set()
        if targets:
            tasks = [asyncio.create_task(_one(o)) for o in targets]
            done, pending = await asyncio.wait(tasks, timeout=max(0.0, deadline - loop.time()))
        for t in pending:
            t.cancel()
        if pending:
            report.timed_out = True
            await asyncio.gather(*pending, return_exceptions=True)

        for o in scope:
            if o.status is OrderStatus.CANCELLED:
                report.cancelled.append(o.client_id)
            elif not o.is_terminal:
                report.unresolved.append(o.client_id)
        self.log.info(f"[Order] cancel_all cancelled={len(report.cancelled)} unresolved={len(report.unresolved)}")
        return report
