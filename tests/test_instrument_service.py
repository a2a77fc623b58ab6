# tests/test_instrument_service.py
import pytest
from decimal import Decimal

from trading.errors import InvalidOrderSpec, PrecisionError
from trading.services.instrument_service import InstrumentService


class Endpoints:
    markets = "/markets"

class FakeHttp:
    def __init__(self, payload):
        self._payload = payload
        self.calls = []

    async def get_public(self, path, params=None):
        assert path == Endpoints.markets
        self.calls.append(params)
        return self._payload


MARKETS = {
    "results": [
        {"symbol": "BTC-USD-PERP", "price_tick_size": "0.1", "order_size_increment": "0.001",
         "min_notional": "10", "base_currency": "BTC", "quote_currency": "USD"},
        {"symbol": "ETH-USD-PERP", "price_tick_size": "0.01", "order_size_increment": "0.01",
         "min_notional": "10", "base_currency": "ETH", "quote_currency": "USD"},
        {"symbol": "BROKEN-USD-PERP"},
    ],
}

@pytest.mark.asyncio
async def test_refresh_and_get():
    svc = InstrumentService(FakeHttp(MARKETS), Endpoints)

    await svc.refresh()
    btc = svc.get("BTC-USD-PERP")
    assert btc.price_tick == Decimal("0.1")
    assert btc.size_increment == Decimal("0.001")
    assert btc.min_notional == Decimal("10")
    assert btc.base_currency == "BTC"
    # 解析失败的行被跳过
    assert not svc.is_known("BROKEN-USD-PERP")

@pytest.mark.asyncio
async def test_get_or_refresh_unknown_market():
    http = FakeHttp(MARKETS)
    svc = InstrumentService(http, Endpoints)
    assert (await svc.get_or_refresh("ETH-USD-PERP")).symbol == "ETH-USD-PERP"
    assert http.calls == [{"market": "ETH-USD-PERP"}]
    # cached, no second request
    await svc.get_or_refresh("ETH-USD-PERP")
    assert len(http.calls) == 1

    with pytest.raises(InvalidOrderSpec):
        await svc.get_or_refresh("DOGE-USD-PERP")
    with pytest.raises(InvalidOrderSpec):
        svc.get("DOGE-USD-PERP")

@pytest.mark.asyncio
async def test_prune_replaces_cache():
    http = FakeHttp(MARKETS)
    svc = InstrumentService(http, Endpoints)
    await svc.refresh()
    http._payload = {"results": [MARKETS["results"][0]]}
    await svc.refresh(prune=True)
    assert svc.is_known("BTC-USD-PERP")
    assert not svc.is_known("ETH-USD-PERP")

@pytest.mark.asyncio
async def test_round_and_validate_ok():
    svc = InstrumentService(FakeHttp(MARKETS), Endpoints)
    await svc.refresh()

    px = svc.round_price("ETH-USD-PERP", Decimal("2034.0073"))   # -> 2034.01
    sz = svc.normalize_size("ETH-USD-PERP", Decimal("0.2349"))   # -> 0.23
    assert px == Decimal("2034.01")
    assert sz == Decimal("0.23")

    # 不应抛异常
    svc.validate("ETH-USD-PERP", px=px, sz=sz)
    svc.validate("BTC-USD-PERP", px=None, sz=Decimal("0.001"))

@pytest.mark.asyncio
async def test_validate_violations():
    svc = InstrumentService(FakeHttp(MARKETS), Endpoints)
    await svc.refresh()

    # 数量未对齐 increment
    with pytest.raises(PrecisionError) as e1:
        svc.validate("BTC-USD-PERP", px=None, sz=Decimal("0.0015"))
    assert "order_size_increment" in str(e1.value)
    assert e1.value.ctx["suggestion"] == "0.001"

    # 价格不对齐 tick，应给出修复建议
    with pytest.raises(PrecisionError) as e2:
        svc.validate("BTC-USD-PERP", px=Decimal("95000.06"), sz=Decimal("0.01"))
    assert "price_tick_size" in str(e2.value)
    assert e2.value.ctx["suggestion"] == "95000.1"

    # 名义价值不足
    with pytest.raises(PrecisionError) as e3:
        svc.validate("BTC-USD-PERP", px=Decimal("1000"), sz=Decimal("0.001"))
    assert "min_notional" in str(e3.value)
