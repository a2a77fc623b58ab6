# trading/services/instrument_service.py
from __future__ import annotations
import asyncio
from typing import Dict, Optional, Any
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from trading.models import Instrument
from trading.errors import PrecisionError, InvalidOrderSpec
from utils.logger import logger as default_logger


def _d(x: Any) -> Decimal:
    """Safe Decimal from str/float/int."""
    if x is None:
        return Decimal("0")
    s = str(x).strip()
    if not s:
        return Decimal("0")
    try:
        return Decimal(s)
    except InvalidOperation:
        return Decimal("0")

def _nearest_multiple(value: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return value
    q = (value / step).to_integral_value(rounding=ROUND_HALF_UP)
    return q * step


def _floor_multiple(value: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return value
    q = (value / step).to_integral_value(rounding=ROUND_DOWN)
    return q * step


def _is_multiple(value: Decimal, step: Decimal) -> bool:
    if step <= 0:
        return True
    return value % step == 0


class InstrumentService:
    """
    Pulls & caches market specs (price_tick_size / order_size_increment / min_notional)
    from GET /markets, and provides normalization/validation helpers.
    """
    def __init__(self, http_client, endpoints, logger=None) -> None:
        self._http = http_client
        self._ep = endpoints
        self.log = logger or default_logger
        self._cache: Dict[str, Instrument] = {}
        self._lock = asyncio.Lock()

    async def refresh(self, market: Optional[str] = None, prune: bool = False) -> None:
        """Fetch /markets (optionally ?market=) and populate cache."""
        params = {"market": market} if market else None
        payload = await self._http.get_public(self._ep.markets, params=params)

        rows = payload.get("results") or []

        updates: Dict[str, Instrument] = {}
        for row in rows:
            symbol_for_log = row.get("symbol", "?")
            try:
                symbol = row["symbol"]
                updates[symbol] = Instrument(
                    symbol=symbol,
                    price_tick=_d(row["price_tick_size"]),
                    size_increment=_d(row["order_size_increment"]),
                    min_notional=_d(row.get("min_notional", "0")),
                    base_currency=row.get("base_currency", ""),
                    quote_currency=row.get("quote_currency", ""),
                )
            except KeyError as e:
                self.log.warning(f"Failed to parse market {symbol_for_log}: row: {row} (err={e})")

        async with self._lock:
            if not prune:
                merged = dict(self._cache)
                merged.update(updates)
                self._cache = merged
            elif not market:
                self._cache = updates
            else:
                new_cache = dict(self._cache)
                new_cache.pop(market, None)
                new_cache.update(updates)
                self._cache = new_cache
        self.log.info(f"Instruments refreshed: {len(updates)} market(s), cached={len(self._cache)}")

    async def get_or_refresh(self, market: str) -> Instrument:
        inst = self._cache.get(market)
        if inst:
            return inst

        await self.refresh(market)
        inst = self._cache.get(market)
        if not inst:
            raise InvalidOrderSpec(f"Unknown market after refresh: {market}", market=market)
        return inst

    def is_known(self, market: str) -> bool:
        return market in self._cache

    def get(self, market: str) -> Instrument:
        """Return market specs or raise if unknown."""
        inst = self._cache.get(market)
        if not inst:
            raise InvalidOrderSpec(f"Unknown market: {market}", market=market)
        return inst

    def round_price(self, market: str, px: Decimal) -> Decimal:
        """Round price to price_tick."""
        return _nearest_multiple(Decimal(px), self.get(market).price_tick)

    def normalize_size(self, market: str, sz: Decimal) -> Decimal:
        """Floor size to size_increment multiples."""
        return _floor_multiple(Decimal(sz), self.get(market).size_increment)

    def validate(self, market: str, px: Optional[Decimal], sz: Decimal) -> None:
        """Validate increment/tick alignment and min notional; raise PrecisionError on violation."""
        inst = self.get(market)
        sz = Decimal(sz)

        if not _is_multiple(sz, inst.size_increment):
            raise PrecisionError(
                f"Size {sz} not multiple of order_size_increment {inst.size_increment} for {market}",
                field="size", expected=f"multiple of {inst.size_increment}", actual=str(sz),
                suggestion=str(_floor_multiple(sz, inst.size_increment)), market=market
            )

        if px is not None:
            px = Decimal(px)
            if not _is_multiple(px, inst.price_tick):
                raise PrecisionError(
                    f"Price {px} not multiple of price_tick_size {inst.price_tick} for {market}",
                    field="price", expected=f"multiple of {inst.price_tick}", actual=str(px),
                    suggestion=str(_nearest_multiple(px, inst.price_tick)), market=market
                )
            notional = px * sz
            if inst.min_notional > 0 and notional < inst.min_notional:
                raise PrecisionError(
                    f"Notional {notional} < min_notional {inst.min_notional} for {market}",
                    field="notional", expected=f">={inst.min_notional}", actual=str(notional),
                    market=market
                )
