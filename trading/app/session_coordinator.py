# trading/app/session_coordinator.py
import asyncio
import contextlib
from typing import Awaitable, Callable, Optional

from infra import HttpPort
from infra.http_client import HttpError, ParadexApiError
from trading.config import TradingSettings
from trading.enums import Phase, Visibility
from trading.errors import NetworkError, TradingError
from trading.event_bus import EventBus, TOPIC_ORDER_ERROR
from trading.models import SessionReport, TeardownReport
from trading.services.account_service import AccountService
from trading.services.auth_session import AuthSession
from trading.services.instrument_service import InstrumentService
from trading.services.key_manager import KeyManager
from trading.services.market_data_service import MarketDataSubscriber
from trading.services.onboarding_service import OnboardingService
from trading.services.order_engine import OrderEngine
from utils.logger import logger as default_logger

Strategy = Callable[["SessionCoordinator"], Awaitable[None]]


def _recoverable(exc: BaseException) -> bool:
    """Order-level failures (rejections, bad state, order REST errors) never end the session."""
    return isinstance(exc, TradingError) and exc.phase is Phase.ORDER


class SessionCoordinator:
    """
    Drives one session: onboarding -> auth -> streams -> trading -> teardown.

    Components are built lazily in run() so that key or chain-id problems are
    reported as an onboarding failure instead of escaping the constructor.
    Pre-built components may be injected (tests, custom wiring).
    """

    def __init__(self, settings: TradingSettings, endpoints, http_client: HttpPort,
                 *, strategy: Optional[Strategy] = None, event_bus: Optional[EventBus] = None,
                 logger=None, connect=None, initial_jitter_s: float = 0.5,
                 keys: Optional[KeyManager] = None, subscriber: Optional[MarketDataSubscriber] = None):
        self.settings = settings
        self.endpoints = endpoints
        self.http = http_client
        self.strategy = strategy
        self.bus = event_bus or EventBus()
        self.log = logger or default_logger
        self._connect = connect
        self._initial_jitter_s = initial_jitter_s

        self.keys = keys
        self.onboarding: Optional[OnboardingService] = None
        self.auth: Optional[AuthSession] = None
        self.instruments: Optional[InstrumentService] = None
        self.account: Optional[AccountService] = None
        self.subscriber = subscriber
        self.engine: Optional[OrderEngine] = None

        self._shutdown = asyncio.Event()
        self._refresh_stop = asyncio.Event()
        self._refresh_task: Optional[asyncio.Task] = None

    def request_shutdown(self) -> None:
        self.log.info("[Session] shutdown requested")
        self._shutdown.set()

    # ---- wiring --------------------------------------------------------------
    async def _resolve_chain_id(self) -> str:
        if self.endpoints.chain_id:
            return self.endpoints.chain_id
        try:
            cfg = await self.http.get_public(self.endpoints.system_config)
        except (HttpError, ParadexApiError) as e:
            raise NetworkError(f"cannot read {self.endpoints.system_config}: {e}", phase=Phase.ONBOARDING) from e
        chain_id = cfg.get("starknet_chain_id")
        if not chain_id:
            raise NetworkError("system config carries no starknet_chain_id", phase=Phase.ONBOARDING)
        self.endpoints.chain_id = chain_id
        self.log.info(f"[Session] chain id from venue: {chain_id}")
        return chain_id

    async def _build(self) -> None:
        s = self.settings
        if self.keys is None:
            chain_id = await self._resolve_chain_id()
            self.keys = KeyManager(s.identity, s.subkey, chain_id, s.derivation, logger=self.log)
        self.onboarding = OnboardingService(self.http, self.endpoints, self.keys, self.log)
        self.auth = AuthSession(self.http, self.endpoints, self.keys, s.auth, self.log)
        self.instruments = InstrumentService(self.http, self.endpoints, self.log)
        self.account = AccountService(self.http, self.endpoints, self.log)
        if self.subscriber is None:
            self.subscriber = MarketDataSubscriber(
                self.endpoints.ws_url, self.bus, self.auth, s.streaming, self.log,
                connect=self._connect, initial_jitter_s=self._initial_jitter_s,
            )
        self.engine = OrderEngine(self.http, self.endpoints, self.keys, self.auth,
                                  instruments=self.instruments, event_bus=self.bus, logger=self.log)

    # ---- run -----------------------------------------------------------------
    async def run(self) -> SessionReport:
        s = self.settings
        report = SessionReport(ok=False)
        phase = Phase.ONBOARDING
        try:
            await self._build()
            report.onboarding = await self.onboarding.ensure_onboarded(s.identity)

            phase = Phase.AUTH
            await self.auth.authenticate()
            self.http.set_token_provider(self.auth.bearer)
            self._refresh_task = asyncio.create_task(self.auth.run_refresh_loop(self._refresh_stop))
            if s.session.account_summary:
                await self._account_summary(report)

            phase = Phase.STREAMING
            for ch in s.session.public_channels:
                await self.subscriber.subscribe(ch, Visibility.PUBLIC)
            for ch in s.session.private_channels:
                await self.subscriber.subscribe(ch, Visibility.PRIVATE)

            phase = Phase.ORDER
            await self._trade()
            report.ok = True
        except TradingError as e:
            report.failed_phase = e.phase or phase
            report.error = str(e)
            self.log.error(f"[Session] {report.failed_phase.value} failed: {e}")
        except Exception as e:
            report.failed_phase = phase
            report.error = repr(e)
            self.log.exception(f"[Session] {phase.value} crashed")
        except asyncio.CancelledError:
            report.failed_phase = phase
            report.error = "session cancelled"
            self.log.warning("[Session] cancelled, tearing down")
            raise
        finally:
            report.teardown = await self._teardown()
            if self.engine is not None:
                report.orders = self.engine.snapshot()
            td = report.teardown
            if report.ok and (td.unresolved or td.timed_out or not td.connections_closed):
                report.ok = False
                report.failed_phase = Phase.TEARDOWN
                report.error = (f"teardown left {len(td.unresolved)} unresolved order(s), "
                                f"connections_closed={td.connections_closed}")
            self.log.info(f"[Session] finished ok={report.ok} exit_code={report.exit_code}")
        return report

    async def _account_summary(self, report: SessionReport) -> None:
        """Account, balances and positions; a failed read is logged and the session goes on."""
        try:
            report.account = await self.account.get_account()
            report.balances = await self.account.get_balances()
            report.positions = await self.account.get_positions()
        except TradingError as e:
            self.log.warning(f"[Session] account summary unavailable: {e}")
            return
        self.log.info(f"[Session] account {report.account.account} status={report.account.status} "
                      f"value={report.account.account_value} free_collateral={report.account.free_collateral}")
        for b in report.balances:
            self.log.info(f"[Session] balance {b.token}={b.size}")
        for p in report.positions:
            self.log.info(f"[Session] position {p.market} {p.side} {p.size} @ {p.average_entry_price} "
                          f"upnl={p.unrealized_pnl}")

    async def _trade(self) -> None:
        """Block until run_duration elapses, shutdown is requested, or something fatal happens."""
        timer = asyncio.create_task(asyncio.sleep(self.settings.session.run_duration_s))
        shutdown = asyncio.create_task(self._shutdown.wait())
        stream_failed = asyncio.create_task(self.subscriber.failed.wait())
        watch = {timer, shutdown, stream_failed}
        if self._refresh_task is not None:
            watch.add(self._refresh_task)
        strategy_task = asyncio.create_task(self.strategy(self)) if self.strategy else None
        pending = set(watch) | ({strategy_task} if strategy_task else set())
        try:
            while True:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if strategy_task is not None and strategy_task in done:
                    exc = strategy_task.exception() if not strategy_task.cancelled() else None
                    if exc is not None and not _recoverable(exc):
                        raise exc
                    if exc is not None:
                        self.log.warning(f"[Session] strategy stopped on order error, session continues: {exc}")
                        self.bus.publish(TOPIC_ORDER_ERROR, exc)
                    else:
                        self.log.info("[Session] strategy finished, waiting for run duration")
                    strategy_task = None
                    if not (done & watch):
                        continue
                break
            if stream_failed.done():
                raise self.subscriber.fatal_error or NetworkError("stream failed", phase=Phase.STREAMING)
            if self._refresh_task is not None and self._refresh_task.done() and not self._refresh_task.cancelled():
                exc = self._refresh_task.exception()
                if exc is not None:
                    raise exc
        finally:
            for t in pending:
                if t is not self._refresh_task:
                    t.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await asyncio.gather(*(t for t in pending if t is not self._refresh_task),
                                     return_exceptions=True)

    async def _teardown(self) -> TeardownReport:
        loop = asyncio.get_running_loop()
        budget = float(self.settings.session.teardown_timeout_s)
        deadline = loop.time() + budget
        report = TeardownReport()

        if self.engine is not None:
            self.engine.stop_accepting()
            if self.settings.session.cancel_on_teardown and self.auth is not None and self.auth.credential:
                report = await self.engine.cancel_all(timeout=budget * 0.7,
                                                      bulk=self.settings.session.bulk_cancel_on_teardown)
            else:
                report.unresolved = [o.client_id for o in self.engine.open_orders()]

        self._refresh_stop.set()
        if self._refresh_task is not None:
            if not self._refresh_task.done():
                self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._refresh_task

        if self.subscriber is not None:
            remaining = max(0.5, deadline - loop.time())
            try:
                report.connections_closed = await asyncio.wait_for(
                    self.subscriber.stop(timeout=remaining / 2), timeout=remaining)
            except asyncio.TimeoutError:
                report.connections_closed = False
                report.timed_out = True

        if self.auth is not None:
            await self.auth.release()

        if report.unresolved:
            self.log.warning(f"[Session] unresolved orders at teardown: {report.unresolved}")
        return report
