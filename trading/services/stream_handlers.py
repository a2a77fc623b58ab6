# trading/services/stream_handlers.py
"""
Channel decoders for the JSON-RPC stream.

A decoder is registered per channel prefix (the part before the first '.')
and turns the `params.data` object of a subscription frame into a typed
event. Channels without a typed model pass the dict through unchanged.
"""
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from trading.enums import Side
from trading.errors import DecodeError
from trading.models import BboEvent, Fill, OrderBookEvent, TradeEvent

Decoder = Callable[[str, Dict[str, Any]], Any]
channel_registry: Dict[str, Decoder] = {}

PUBLIC_PREFIXES = {"markets_summary", "bbo", "trades", "order_book", "order_book_deltas", "funding_data"}
PRIVATE_PREFIXES = {"orders", "fills", "positions", "account", "balance_events", "funding_payments"}


def register_channel(prefix: str):
    def decorator(fn: Decoder):
        channel_registry[prefix] = fn
        return fn
    return decorator


def channel_prefix(channel: str) -> str:
    return channel.split(".", 1)[0]


def parse_frame(raw: Any) -> Dict[str, Any]:
    """Raw websocket frame -> JSON object; DecodeError for anything else."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError("frame is not utf-8", error=str(e)) from e
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError("frame is not valid JSON", error=str(e)) from e
    if not isinstance(msg, dict):
        raise DecodeError("frame is not a JSON object", kind=type(msg).__name__)
    return msg


def decode_event(channel: str, data: Any) -> Tuple[str, Any]:
    """(prefix, typed payload) for a subscription frame's data."""
    prefix = channel_prefix(channel)
    fn = channel_registry.get(prefix)
    if fn is None:
        return prefix, data
    if not isinstance(data, dict):
        raise DecodeError("subscription data is not an object", channel=channel)
    try:
        return prefix, fn(channel, data)
    except DecodeError:
        raise
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise DecodeError(f"cannot decode {prefix} payload", channel=channel, error=repr(e)) from e


def seq_of(data: Any) -> Optional[int]:
    seq = getattr(data, "seq_no", None)
    if seq is None and isinstance(data, dict):
        seq = data.get("seq_no")
    if seq is None:
        return None
    try:
        return int(seq)
    except (TypeError, ValueError):
        return None


def _dec(x: Any) -> Optional[Decimal]:
    if x is None or x == "":
        return None
    return Decimal(str(x))


def _req_dec(row: Dict[str, Any], key: str) -> Decimal:
    v = _dec(row.get(key))
    if v is None:
        raise DecodeError(f"missing field {key}")
    return v


def _int(x: Any) -> Optional[int]:
    if x is None or x == "":
        return None
    return int(x)


def _side(x: Any) -> Side:
    s = str(x or "").upper()
    if s not in ("BUY", "SELL"):
        raise DecodeError(f"unknown side {x!r}")
    return Side(s)


def _levels(rows: Optional[List[Dict[str, Any]]]) -> List[Tuple[str, Decimal, Decimal]]:
    return [(str(r["side"]).upper(), _req_dec(r, "price"), _req_dec(r, "size")) for r in rows or []]


@register_channel("bbo")
def handle_bbo(channel: str, data: Dict[str, Any]) -> BboEvent:
    return BboEvent(
        market=data.get("market") or channel.split(".", 1)[-1],
        bid=_dec(data.get("bid")),
        bid_size=_dec(data.get("bid_size")),
        ask=_dec(data.get("ask")),
        ask_size=_dec(data.get("ask_size")),
        ts=_int(data.get("last_updated_at")),
        seq_no=_int(data.get("seq_no")),
    )


@register_channel("trades")
def handle_trades(channel: str, data: Dict[str, Any]) -> TradeEvent:
    return TradeEvent(
        market=data["market"],
        trade_id=str(data["id"]),
        side=_side(data.get("side")),
        price=_req_dec(data, "price"),
        size=_req_dec(data, "size"),
        ts=_int(data.get("created_at")),
    )


@register_channel("order_book")
@register_channel("order_book_deltas")
def handle_order_book(channel: str, data: Dict[str, Any]) -> OrderBookEvent:
    return OrderBookEvent(
        market=data["market"],
        update_type=str(data.get("update_type", "")),
        inserts=_levels(data.get("inserts")),
        updates=_levels(data.get("updates")),
        deletes=_levels(data.get("deletes")),
        seq_no=_int(data.get("seq_no")),
        ts=_int(data.get("last_updated_at")),
    )


@register_channel("orders")
def handle_orders(channel: str, data: Dict[str, Any]) -> Dict[str, Any]:
    # normalized into OrderUpdate by the reconciler
    for key in ("id", "status"):
        if not data.get(key):
            raise DecodeError(f"order frame missing {key}", channel=channel)
    return data


@register_channel("fills")
def handle_fills(channel: str, data: Dict[str, Any]) -> Fill:
    return Fill(
        fill_id=str(data["id"]),
        order_id=str(data["order_id"]) if data.get("order_id") else None,
        client_id=data.get("client_id") or None,
        market=data["market"],
        side=_side(data.get("side")),
        price=_req_dec(data, "price"),
        size=_req_dec(data, "size"),
        fee=_dec(data.get("fee")) or Decimal("0"),
        ts=_int(data.get("created_at")) or 0,
        raw=data,
    )
