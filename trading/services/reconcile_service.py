# trading/services/reconcile_service.py
import copy
import time
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Dict, Optional

from trading.enums import OrderStatus
from trading.event_bus import EventBus, TOPIC_ORDER
from trading.models import Fill, Order, OrderUpdate
from trading.order_state import resolve_path
from trading.stores.order_store import OrderStore
from utils.logger import logger as default_logger

ZERO = Decimal("0")

# CLOSED orders with one of these reasons and nothing filled never reached the book
REJECT_REASONS = frozenset({
    "POST_ONLY_WOULD_CROSS",
    "REDUCE_ONLY_WOULD_INCREASE",
    "NOT_ENOUGH_MARGIN",
    "ORDER_EXCEEDS_POSITION_LIMIT",
    "EXCEEDS_MAX_SLIPPAGE",
    "SELF_TRADE",
    "PRICE_NOT_AVAILABLE",
    "UNEXPECTED_FAILURE",
    "INVALID_ORDER",
})


def _dec(x: Any) -> Optional[Decimal]:
    if x is None or x == "":
        return None
    return Decimal(str(x))


def map_venue_status(data: Dict[str, Any]) -> OrderStatus:
    """Venue order payload -> local OrderStatus."""
    st = str(data.get("status", "")).upper()
    size = _dec(data.get("size"))
    remaining = _dec(data.get("remaining_size"))
    filled = (size - remaining) if size is not None and remaining is not None else ZERO

    if st in ("NEW", "OPEN", "UNTRIGGERED"):
        return OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.OPEN
    if st == "CLOSED":
        if remaining is not None and remaining <= 0 and filled > 0:
            return OrderStatus.FILLED
        if filled <= 0 and str(data.get("cancel_reason") or "").upper() in REJECT_REASONS:
            return OrderStatus.REJECTED
        return OrderStatus.CANCELLED
    raise ValueError(f"unknown venue order status {st!r}")


def from_venue_order(data: Dict[str, Any], source: str = "stream") -> OrderUpdate:
    size = _dec(data.get("size"))
    remaining = _dec(data.get("remaining_size"))
    filled = (size - remaining) if size is not None and remaining is not None else None
    return OrderUpdate(
        status=map_venue_status(data),
        source=source,
        client_id=data.get("client_id") or None,
        server_id=str(data["id"]) if data.get("id") else None,
        filled_size=filled,
        avg_fill_price=_dec(data.get("avg_fill_price")),
        price=_dec(data.get("price")),
        size=size,
        cancel_reason=data.get("cancel_reason") or None,
    )


def from_fill(fill: Fill) -> OrderUpdate:
    # status is recomputed from the merged fill total in apply()
    return OrderUpdate(
        status=OrderStatus.PARTIALLY_FILLED,
        source="stream",
        client_id=fill.client_id,
        server_id=fill.order_id,
        fill_delta=fill.size,
        fill_id=fill.fill_id,
        price=fill.price,
    )


class ReconcileService:
    """
    Merges direct responses and stream events into the OrderStore.

    Events are matched by server id, falling back to client id. Only legal
    transitions are applied; fill totals only grow, so the final state does
    not depend on whether the ack or the stream event arrives first.
    """

    def __init__(self, order_store: OrderStore, event_bus: Optional[EventBus] = None,
                 logger=None, *, orphan_limit: int = 256) -> None:
        self._orders = order_store
        self._bus = event_bus
        self.log = logger or default_logger
        self.orphans: Deque[OrderUpdate] = deque(maxlen=orphan_limit)
        self.discarded = 0

    def transition(self, order: Order, target: OrderStatus, source: str) -> None:
        prev = order.status
        now = time.time()
        order.status = target
        order.updated_at = now
        order.history.append((prev, target, source, now))
        self.log.info(f"[Order] {order.client_id} {prev.value} -> {target.value} ({source})")

    def apply(self, update: OrderUpdate) -> Optional[Order]:
        order = self._orders.find(server_id=update.server_id, client_id=update.client_id)
        if order is None:
            self.orphans.append(update)
            self.log.warning(f"[Reconcile] orphan event server_id={update.server_id} "
                             f"client_id={update.client_id} status={update.status.value}")
            return None

        if update.server_id and order.server_id != update.server_id:
            if order.server_id is None:
                self._orders.bind_server_id(order, update.server_id)
            else:
                self.log.warning(f"[Reconcile] {order.client_id} server id mismatch "
                                 f"{order.server_id} != {update.server_id}, event discarded")
                self.discarded += 1
                return order

        # stale OPEN snapshot while a modify is pending
        if (order.status is OrderStatus.MODIFY_PENDING and update.fill_id is None
                and update.status is OrderStatus.OPEN and not self._matches_pending(order, update)):
            self.log.debug(f"[Reconcile] {order.client_id} stale pre-modify event discarded")
            return order

        changed = self._merge_fills(order, update)
        target = self._target(order, update)

        if target is order.status:
            if target is OrderStatus.PARTIALLY_FILLED and changed:
                self.transition(order, target, update.source)
            changed |= self._merge_fields(order, update)
            if changed:
                self._publish(order)
            return order

        if order.is_terminal:
            self.log.warning(f"[Reconcile] {order.client_id} is {order.status.value}, "
                             f"ignoring {target.value} from {update.source}")
            self.discarded += 1
            if changed:
                self._publish(order)
            return order

        path = resolve_path(order.status, target)
        if path is None:
            self.log.warning(f"[Reconcile] {order.client_id} illegal {order.status.value} -> "
                             f"{target.value} from {update.source}, discarded")
            self.discarded += 1
            if changed:
                self._publish(order)
            return order

        for step in path:
            self.transition(order, step, update.source)
        self._merge_fields(order, update)
        self._publish(order)
        return order

    # ---- helpers -------------------------------------------------------------
    @staticmethod
    def _matches_pending(order: Order, update: OrderUpdate) -> bool:
        pc = order.pending_changes
        if pc is None:
            return True
        if pc.price is not None and update.price is not None and update.price != pc.price:
            return False
        if pc.size is not None and update.size is not None and update.size != pc.size:
            return False
        return True

    def _merge_fills(self, order: Order, update: OrderUpdate) -> bool:
        before = order.filled_size
        if update.fill_id is not None:
            if update.fill_id in order.seen_fills:
                self.log.debug(f"[Reconcile] {order.client_id} duplicate fill {update.fill_id}")
                return False
            order.seen_fills.add(update.fill_id)
            delta = update.fill_delta or ZERO
            prev_sum = order.fill_sum
            order.fill_sum = prev_sum + delta
            if update.price is not None and delta > 0:
                prev_avg = order.avg_fill_price if prev_sum > 0 and order.avg_fill_price is not None else update.price
                order.avg_fill_price = (prev_avg * prev_sum + update.price * delta) / order.fill_sum
        elif update.avg_fill_price is not None and (update.filled_size or ZERO) >= order.filled_size:
            order.avg_fill_price = update.avg_fill_price

        order.filled_size = max(order.filled_size, update.filled_size or ZERO, order.fill_sum)
        return order.filled_size != before

    @staticmethod
    def _target(order: Order, update: OrderUpdate) -> OrderStatus:
        target = update.status
        # a closed-without-fill reason on an order that already rested is a cancel
        if target is OrderStatus.REJECTED and order.status not in (
                OrderStatus.SUBMITTED, OrderStatus.MODIFY_PENDING, OrderStatus.REJECTED):
            return OrderStatus.CANCELLED
        if target in (OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED):
            if order.size > 0 and order.filled_size >= order.size:
                return OrderStatus.FILLED
            if order.filled_size > 0 and order.status is not OrderStatus.MODIFY_PENDING:
                return OrderStatus.PARTIALLY_FILLED
        return target

    def _merge_fields(self, order: Order, update: OrderUpdate) -> bool:
        changed = False
        if update.cancel_reason and order.cancel_reason != update.cancel_reason:
            order.cancel_reason = update.cancel_reason
            changed = True
        pc = order.pending_changes
        if (pc is not None and update.fill_id is None
                and order.status is not OrderStatus.MODIFY_PENDING
                and update.status is OrderStatus.OPEN and self._matches_pending(order, update)):
            if pc.price is not None:
                order.price = pc.price
            if pc.size is not None:
                order.size = pc.size
            order.pending_changes = None
            changed = True
        return changed

    def _publish(self, order: Order) -> None:
        if self._bus is not None:
            self._bus.publish(TOPIC_ORDER, copy.deepcopy(order))
