# trading/services/typed_data.py
"""
SNIP-12 (revision 0) typed-data payloads signed for the venue.

All messages share the domain {name: "Paradex", version: "1", chainId}.
Order sizes and prices are signed as integers scaled by 10^8.
"""
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Optional

from trading.enums import OrderType, Side

CHAIN_SCALE = Decimal(10) ** 8

_DOMAIN_TYPE = [
    {"name": "name", "type": "felt"},
    {"name": "version", "type": "felt"},
    {"name": "chainId", "type": "felt"},
]

_ORDER_FIELDS = [
    {"name": "timestamp", "type": "felt"},
    {"name": "market", "type": "felt"},
    {"name": "side", "type": "felt"},
    {"name": "orderType", "type": "felt"},
    {"name": "size", "type": "felt"},
    {"name": "price", "type": "felt"},
]


def string_to_felt_hex(s: str) -> str:
    """ASCII string -> 0x-prefixed felt (short string encoding)."""
    if not s:
        return "0x0"
    return "0x" + s.encode("ascii").hex()


def chain_amount(value: Optional[Decimal]) -> str:
    """Decimal -> integer string scaled by 10^8 (None / market price -> "0")."""
    if value is None:
        return "0"
    return str(int((Decimal(value) * CHAIN_SCALE).to_integral_value(rounding=ROUND_DOWN)))


def _domain(chain_id: str) -> Dict[str, Any]:
    return {
        "name": string_to_felt_hex("Paradex"),
        "chainId": string_to_felt_hex(chain_id),
        "version": "1",
    }


def _typed(chain_id: str, primary: str, fields: list, message: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "types": {"StarkNetDomain": _DOMAIN_TYPE, primary: fields},
        "primaryType": primary,
        "domain": _domain(chain_id),
        "message": message,
    }


def build_onboarding_typed_data(chain_id: str) -> Dict[str, Any]:
    return _typed(chain_id, "Constant",
                  [{"name": "action", "type": "felt"}],
                  {"action": "Onboarding"})


def build_auth_typed_data(chain_id: str, timestamp: int, expiration: int,
                          path: str = "/v1/auth") -> Dict[str, Any]:
    fields = [
        {"name": "method", "type": "felt"},
        {"name": "path", "type": "felt"},
        {"name": "body", "type": "felt"},
        {"name": "timestamp", "type": "felt"},
        {"name": "expiration", "type": "felt"},
    ]
    return _typed(chain_id, "Request", fields, {
        "method": "POST",
        "path": path,
        "body": "",
        "timestamp": int(timestamp),
        "expiration": int(expiration),
    })


def _order_message(timestamp_ms: int, market: str, side: Side, order_type: OrderType,
                   size: Decimal, price: Optional[Decimal]) -> Dict[str, Any]:
    return {
        "timestamp": int(timestamp_ms),
        "market": market,
        "side": side.chain_side(),
        "orderType": order_type.value,
        "size": chain_amount(size),
        "price": chain_amount(price if order_type is OrderType.LIMIT else None),
    }


def build_order_typed_data(chain_id: str, *, timestamp_ms: int, market: str, side: Side,
                           order_type: OrderType, size: Decimal,
                           price: Optional[Decimal]) -> Dict[str, Any]:
    return _typed(chain_id, "Order", _ORDER_FIELDS,
                  _order_message(timestamp_ms, market, side, order_type, size, price))


def build_modify_typed_data(chain_id: str, *, timestamp_ms: int, order_id: str, market: str,
                            side: Side, order_type: OrderType, size: Decimal,
                            price: Optional[Decimal]) -> Dict[str, Any]:
    message = _order_message(timestamp_ms, market, side, order_type, size, price)
    message["id"] = str(order_id)
    return _typed(chain_id, "ModifyOrder",
                  _ORDER_FIELDS + [{"name": "id", "type": "felt"}],
                  message)
