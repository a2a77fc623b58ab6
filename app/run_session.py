# app/run_session.py
import asyncio, signal, os, argparse, sys
from decimal import Decimal
from typing import Any, Dict

from utils import logger, load_cfg, configure_file_logging
from utils.time import parse_duration
from infra import HttpContainer
from trading.config import load_settings
from trading.enums import OrderInstruction, OrderStatus, OrderType, Side
from trading.errors import TradingError
from trading.models import OrderChanges, OrderSpec
from trading.services.endpoints import make_endpoints_from_cfg
from trading.app.session_coordinator import SessionCoordinator


def env_default(name: str, default=None):
    return os.getenv(name, default)

def build_parser():
    p = argparse.ArgumentParser("paradex-session")
    p.add_argument("--production", action="store_true", help="use the production network (default testnet)")
    p.add_argument("--config", default=env_default("SESSION_CONFIG", None), help="path to config.yaml")
    p.add_argument("--env-file", default=None, help="path to .env")
    p.add_argument("--duration", default=None, help="run duration, e.g. 120, 90s, 5m")
    p.add_argument("--log-dir", default=env_default("LOG_DIR", None))
    return p


def make_demo_flow(demo: Dict[str, Any]):
    """Place -> modify -> cancel one resting order, pausing between steps; optional bulk cancel sweep."""
    market = demo["market"]
    pause = parse_duration(demo.get("step_delay", 5))

    async def place_modify_cancel(engine) -> None:
        spec = OrderSpec(
            market=market,
            side=Side(str(demo.get("side", "BUY")).upper()),
            size=Decimal(str(demo["size"])),
            order_type=OrderType.LIMIT,
            price=Decimal(str(demo["price"])),
            instruction=OrderInstruction(str(demo.get("instruction", "POST_ONLY")).upper()),
        )
        try:
            order = await engine.submit(spec)
        except TradingError as e:
            logger.warning(f"[Demo] submit failed: {e}")
            return
        logger.info(f"[Demo] order result {order.client_id} status={order.status.value} id={order.server_id}")
        try:
            order = await engine.wait_for(
                order.client_id,
                {OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
                 OrderStatus.CANCELLED, OrderStatus.REJECTED},
                timeout=pause,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[Demo] {order.client_id} not open after {pause}s")
            return
        if order.status is not OrderStatus.OPEN:
            logger.info(f"[Demo] {order.client_id} is {order.status.value}, nothing to modify")
            return
        await asyncio.sleep(pause)

        if demo.get("modify_price"):
            try:
                order = await engine.modify(order.client_id, OrderChanges(price=Decimal(str(demo["modify_price"]))))
                logger.info(f"[Demo] modify result {order.client_id} price={order.price} status={order.status.value}")
            except TradingError as e:
                logger.warning(f"[Demo] modify failed: {e}")
            await asyncio.sleep(pause)

        try:
            status = await engine.cancel(order.client_id)
            logger.info(f"[Demo] cancel result {order.client_id} -> {status.value}")
        except TradingError as e:
            logger.warning(f"[Demo] cancel failed, left to teardown: {e}")

    async def demo_flow(session: SessionCoordinator) -> None:
        await place_modify_cancel(session.engine)
        if not demo.get("bulk_cancel"):
            return
        # venue-side sweep: this market first, then everything
        for scope in (market, None):
            try:
                cancelled = await session.engine.cancel_all_orders(scope)
                logger.info(f"[Demo] bulk cancel {scope or 'all'} -> {cancelled}")
            except TradingError as e:
                logger.warning(f"[Demo] bulk cancel {scope or 'all'} failed: {e}")

    return demo_flow


async def main() -> int:
    args = build_parser().parse_args()
    configure_file_logging(args.log_dir)

    cfg = load_cfg(args.config, args.env_file)
    if args.production:
        cfg.setdefault("paradex", {})["network"] = "production"
        logger.warning("⚠️ --production given: orders will hit the live venue")
    if args.duration:
        cfg.setdefault("session", {})["run_duration"] = args.duration

    endpoints = make_endpoints_from_cfg(cfg)
    settings = load_settings(cfg)
    demo = cfg.get("demo") or {}
    strategy = make_demo_flow(demo) if demo.get("enabled") else None

    container = await HttpContainer.start(
        endpoints.rest_base, logger,
        timeout_ms=settings.http_timeout_ms,
        max_attempts=settings.rest_max_attempts,
        backoff_ms=settings.backoff_ms,
        time_path=endpoints.system_time,
    )
    coordinator = SessionCoordinator(settings, endpoints, container.http, strategy=strategy, logger=logger)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, coordinator.request_shutdown)
        except NotImplementedError:
            pass

    try:
        report = await coordinator.run()
    finally:
        await container.stop()

    logger.info(
        f"Session report ok={report.ok} failed_phase={report.failed_phase.value if report.failed_phase else None} "
        f"orders={len(report.orders)} non_terminal={[o.client_id for o in report.non_terminal_orders]}"
    )
    if report.error:
        logger.error(f"Session error: {report.error}")
    return report.exit_code


def main_sync() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    main_sync()
