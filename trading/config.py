# trading/config.py
from dataclasses import dataclass, field
from typing import List, Optional

from trading.enums import Network
from trading.models import AccountDerivation, Identity, StarkKey
from utils.logger import logger
from utils.time import parse_duration


@dataclass
class AuthSettings:
    refresh_fraction: float = 0.2        # refresh when < 20% of the validity window is left
    default_ttl_s: float = 300.0         # used when the JWT carries no exp claim
    signature_ttl_s: int = 24 * 60 * 60  # PARADEX-SIGNATURE-EXPIRATION - timestamp
    refresh_check_s: float = 5.0


@dataclass
class StreamingSettings:
    ping_interval_s: float = 20.0
    reconnect_base_s: float = 1.0
    reconnect_cap_s: float = 20.0
    max_reconnect_attempts: int = 12
    max_pending_commands: int = 256
    inbound_queue_size: int = 8192


@dataclass
class SessionSettings:
    run_duration_s: float = 120.0
    teardown_timeout_s: float = 10.0
    cancel_on_teardown: bool = True
    # one venue-wide DELETE /orders before per-order cancels
    bulk_cancel_on_teardown: bool = True
    # log account, balances and positions right after auth
    account_summary: bool = True
    public_channels: List[str] = field(default_factory=list)
    private_channels: List[str] = field(default_factory=list)


@dataclass
class TradingSettings:
    """Trading runtime configuration."""
    network: Network
    identity: Identity
    subkey: StarkKey
    derivation: Optional[AccountDerivation] = None

    auth: AuthSettings = field(default_factory=AuthSettings)
    streaming: StreamingSettings = field(default_factory=StreamingSettings)
    session: SessionSettings = field(default_factory=SessionSettings)

    http_timeout_ms: int = 5000
    rest_max_attempts: int = 3
    backoff_ms: int = 200


def _stark_key(address: str, private_key: str, public_key: Optional[str]) -> StarkKey:
    return StarkKey(account_address=address, private_key=private_key, public_key=public_key or None)


def load_settings(cfg: dict) -> TradingSettings:
    """Build TradingSettings from the (env-resolved) config dict."""
    px = cfg.get("paradex", {})
    acct = cfg.get("account", {})

    missing = [k for k in ("eth_address", "root_address", "root_private_key") if not acct.get(k)]
    if missing:
        raise ValueError(f"Invalid cfg: account is missing {', '.join(missing)}")

    root = _stark_key(acct["root_address"], acct["root_private_key"], acct.get("root_public_key"))

    if acct.get("subkey_private_key"):
        subkey = _stark_key(
            acct.get("subkey_address") or acct["root_address"],
            acct["subkey_private_key"],
            acct.get("subkey_public_key"),
        )
    else:
        logger.warning("No subkey configured; the root StarkNet key will also act as the trading subkey")
        subkey = root

    derivation = None
    deriv_cfg = acct.get("derivation") or {}
    if deriv_cfg.get("proxy_class_hash") and deriv_cfg.get("account_class_hash"):
        derivation = AccountDerivation(
            proxy_class_hash=deriv_cfg["proxy_class_hash"],
            account_class_hash=deriv_cfg["account_class_hash"],
        )

    auth_cfg = cfg.get("auth", {})
    stream_cfg = cfg.get("streaming", {})
    sess_cfg = cfg.get("session", {})
    timeouts_cfg = cfg.get("timeouts", {})
    retries_cfg = cfg.get("retries", {})

    return TradingSettings(
        network=Network(str(px.get("network", "testnet")).lower()),
        identity=Identity(eth_address=acct["eth_address"], root=root),
        subkey=subkey,
        derivation=derivation,
        auth=AuthSettings(
            refresh_fraction=float(auth_cfg.get("refresh_fraction", 0.2)),
            default_ttl_s=parse_duration(auth_cfg.get("default_ttl", 300)),
            signature_ttl_s=int(parse_duration(auth_cfg.get("signature_ttl", 86_400))),
            refresh_check_s=parse_duration(auth_cfg.get("refresh_check", 5)),
        ),
        streaming=StreamingSettings(
            ping_interval_s=parse_duration(stream_cfg.get("ping_interval", 20)),
            reconnect_base_s=parse_duration(stream_cfg.get("reconnect_base", 1)),
            reconnect_cap_s=parse_duration(stream_cfg.get("reconnect_cap", 20)),
            max_reconnect_attempts=int(stream_cfg.get("max_reconnect_attempts", 12)),
            max_pending_commands=int(stream_cfg.get("max_pending_commands", 256)),
            inbound_queue_size=int(stream_cfg.get("inbound_queue_size", 8192)),
        ),
        session=SessionSettings(
            run_duration_s=parse_duration(sess_cfg.get("run_duration", 120)),
            teardown_timeout_s=parse_duration(sess_cfg.get("teardown_timeout", 10)),
            cancel_on_teardown=bool(sess_cfg.get("cancel_on_teardown", True)),
            bulk_cancel_on_teardown=bool(sess_cfg.get("bulk_cancel_on_teardown", True)),
            account_summary=bool(sess_cfg.get("account_summary", True)),
            public_channels=list(sess_cfg.get("public_channels") or []),
            private_channels=list(sess_cfg.get("private_channels") or []),
        ),
        http_timeout_ms=int(timeouts_cfg.get("rest_ms", 5000)),
        rest_max_attempts=int(retries_cfg.get("rest_max_attempts", 3)),
        backoff_ms=int(retries_cfg.get("backoff_ms", 200)),
    )
