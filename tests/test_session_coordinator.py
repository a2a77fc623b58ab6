# tests/test_session_coordinator.py
import time
from decimal import Decimal

import pytest

from conftest import ETH_ADDR, ROOT_ADDR, FakeConnect, make_jwt
from infra.http_client import ParadexApiError
from trading.app.session_coordinator import SessionCoordinator
from trading.config import AuthSettings, SessionSettings, StreamingSettings, TradingSettings
from trading.enums import Network, OrderInstruction, OrderStatus, Phase, Side
from trading.errors import OrderRejected
from trading.event_bus import TOPIC_ORDER_ERROR
from trading.models import Identity, OrderSpec, StarkKey

MARKET = "BTC-USD-PERP"


def _settings(identity, subkey, **session_kw):
    sess = dict(run_duration_s=30, teardown_timeout_s=2,
                public_channels=[f"bbo.{MARKET}"], private_channels=["orders.ALL", "fills.ALL"])
    sess.update(session_kw)
    return TradingSettings(
        network=Network.TESTNET,
        identity=identity,
        subkey=subkey,
        auth=AuthSettings(refresh_check_s=0.05),
        streaming=StreamingSettings(reconnect_base_s=0.01, reconnect_cap_s=0.02, max_reconnect_attempts=2),
        session=SessionSettings(**sess),
    )


def _venue_routes(fake_http):
    fake_http.route("GET", "/onboarding", {"address": ROOT_ADDR})
    fake_http.route("POST", "/auth", lambda **kw: {"jwt_token": make_jwt(time.time() + 300)})
    fake_http.route("GET", "/markets", {"results": [
        {"symbol": MARKET, "price_tick_size": "0.1", "order_size_increment": "0.001", "min_notional": "10"},
    ]})
    fake_http.route("POST", "/orders", lambda json_body=None, **kw: {
        "id": "9001", "client_id": json_body["client_id"], "status": "NEW",
        "size": json_body["size"], "remaining_size": json_body["size"], "price": json_body["price"],
    })
    fake_http.route("DELETE", "/orders/9001", {})


async def place_and_stop(session):
    await session.engine.submit(OrderSpec(market=MARKET, side=Side.BUY, size=Decimal("0.005"),
                                          price=Decimal("95000"), instruction=OrderInstruction.POST_ONLY,
                                          client_id="demo-1"))
    session.request_shutdown()


def _coordinator(identity, subkey, endpoints, fake_http, connect=None, strategy=place_and_stop, **kw):
    return SessionCoordinator(_settings(identity, subkey, **kw), endpoints, fake_http,
                              strategy=strategy, connect=connect or FakeConnect(), initial_jitter_s=0)


@pytest.mark.asyncio
async def test_full_session_cancels_on_teardown(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    fc = FakeConnect()
    session = _coordinator(identity, subkey, endpoints, fake_http, connect=fc)
    report = await session.run()

    assert report.ok, report.error
    assert report.exit_code == 0
    assert report.onboarding.already_onboarded
    assert report.teardown.cancelled == ["demo-1"]
    assert [o.status for o in report.orders] == [OrderStatus.CANCELLED]
    assert report.non_terminal_orders == []
    assert fake_http.count("DELETE", "/orders/9001") == 1

    # one public and one private socket; the private one authenticated first
    assert len(fc.sockets) == 2
    private = next(ws for ws in fc.sockets if ws.sent and ws.sent[0]["method"] == "auth")
    assert ("subscribe", "orders.ALL") in private.requests()
    assert all(ws.closed for ws in fc.sockets)
    assert session.auth.credential.revoked


@pytest.mark.asyncio
async def test_runs_until_duration_without_strategy(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    session = _coordinator(identity, subkey, endpoints, fake_http, strategy=None, run_duration_s=0.2)
    report = await session.run()
    assert report.ok
    assert report.orders == []


@pytest.mark.asyncio
async def test_chain_id_read_from_venue(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    fake_http.route("GET", "/system/config", {"starknet_chain_id": "PRIVATE_SN_POTC_SEPOLIA"})
    endpoints.chain_id = None
    session = _coordinator(identity, subkey, endpoints, fake_http, strategy=None, run_duration_s=0.1)
    report = await session.run()
    assert report.ok
    assert session.keys.chain_id == "PRIVATE_SN_POTC_SEPOLIA"


@pytest.mark.asyncio
async def test_auth_failure(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    fake_http.route("POST", "/auth", ParadexApiError(401, "INVALID_SIGNATURE", "bad signature"))
    report = await _coordinator(identity, subkey, endpoints, fake_http).run()
    assert not report.ok
    assert report.failed_phase is Phase.AUTH
    assert report.exit_code == 1
    assert fake_http.count("POST", "/orders") == 0


@pytest.mark.asyncio
async def test_bad_key_fails_onboarding(subkey, endpoints, fake_http):
    bad = Identity(eth_address=ETH_ADDR, root=StarkKey(ROOT_ADDR, "0xnothex"))
    report = await _coordinator(bad, subkey, endpoints, fake_http).run()
    assert report.failed_phase is Phase.ONBOARDING
    assert report.exit_code == 1
    assert fake_http.calls == []


@pytest.mark.asyncio
async def test_stream_failure_ends_session(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    report = await _coordinator(identity, subkey, endpoints, fake_http,
                                connect=FakeConnect(fail=-1), strategy=None).run()
    assert report.failed_phase is Phase.STREAMING
    assert report.exit_code == 1


@pytest.mark.asyncio
async def test_unresolved_order_fails_teardown(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    fake_http.route("DELETE", "/orders/9001", ParadexApiError(400, "ORDER_IS_LOCKED", "locked"))
    report = await _coordinator(identity, subkey, endpoints, fake_http).run()
    assert report.failed_phase is Phase.TEARDOWN
    assert report.teardown.unresolved == ["demo-1"]
    assert [o.client_id for o in report.non_terminal_orders] == ["demo-1"]
    assert report.exit_code == 1


@pytest.mark.asyncio
async def test_no_cancel_on_teardown_still_reports_open_orders(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    report = await _coordinator(identity, subkey, endpoints, fake_http, cancel_on_teardown=False).run()
    assert fake_http.count("DELETE") == 0
    assert report.teardown.unresolved == ["demo-1"]
    assert report.exit_code == 1


@pytest.mark.asyncio
async def test_rejected_order_does_not_end_session(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    fake_http.route("POST", "/orders", ParadexApiError(400, "POST_ONLY_WOULD_CROSS", "would cross"))
    errors = []

    async def crossing(session):
        session.bus.subscribe(TOPIC_ORDER_ERROR, errors.append)
        await session.engine.submit(OrderSpec(market=MARKET, side=Side.BUY, size=Decimal("0.005"),
                                              price=Decimal("95000"), instruction=OrderInstruction.POST_ONLY,
                                              client_id="cross-1"))

    report = await _coordinator(identity, subkey, endpoints, fake_http, strategy=crossing,
                                run_duration_s=0.3).run()
    assert report.ok, report.error
    assert report.exit_code == 0
    assert report.failed_phase is None
    assert [(o.client_id, o.status) for o in report.orders] == [("cross-1", OrderStatus.REJECTED)]
    assert len(errors) == 1 and isinstance(errors[0], OrderRejected)


@pytest.mark.asyncio
async def test_invalid_order_does_not_end_session(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)

    async def misaligned(session):
        await session.engine.submit(OrderSpec(market=MARKET, side=Side.BUY, size=Decimal("0.0001"),
                                              price=Decimal("95000")))

    report = await _coordinator(identity, subkey, endpoints, fake_http, strategy=misaligned,
                                run_duration_s=0.2).run()
    assert report.ok, report.error
    assert report.orders == []


@pytest.mark.asyncio
async def test_strategy_crash_reported(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)

    async def broken(session):
        raise RuntimeError("strategy bug")

    report = await _coordinator(identity, subkey, endpoints, fake_http, strategy=broken).run()
    assert report.failed_phase is Phase.ORDER
    assert "strategy bug" in report.error
    assert report.exit_code == 1


@pytest.mark.asyncio
async def test_account_summary_and_bulk_teardown(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    fake_http.route("GET", "/account", {"account": ROOT_ADDR, "status": "ACTIVE", "account_value": "1000"})
    fake_http.route("GET", "/balance", {"results": [{"token": "USDC", "size": "1000"}]})
    fake_http.route("GET", "/positions", {"results": []})
    fake_http.route("DELETE", "/orders", {})

    report = await _coordinator(identity, subkey, endpoints, fake_http).run()
    assert report.ok, report.error
    assert report.account.account == ROOT_ADDR
    assert [(b.token, b.size) for b in report.balances] == [("USDC", Decimal("1000"))]
    assert report.positions == []
    assert report.teardown.cancelled == ["demo-1"]
    assert fake_http.count("DELETE", "/orders") == 1
    assert fake_http.count("DELETE", "/orders/9001") == 0


@pytest.mark.asyncio
async def test_account_summary_failure_is_not_fatal(identity, subkey, endpoints, fake_http):
    _venue_routes(fake_http)
    report = await _coordinator(identity, subkey, endpoints, fake_http, strategy=None,
                                run_duration_s=0.1).run()
    assert report.ok, report.error
    assert report.account is None
    assert fake_http.count("GET", "/account") == 1
