# trading/services/endpoints.py
from dataclasses import dataclass
from typing import Optional

from trading.enums import Network

DEFAULT_REST_BASE = {
    "testnet": "https://api.testnet.paradex.trade/v1",
    "production": "https://api.prod.paradex.trade/v1",
}
DEFAULT_WS = {
    "testnet": "wss://ws.api.testnet.paradex.trade/v1",
    "production": "wss://ws.api.prod.paradex.trade/v1",
}

@dataclass
class Endpoints:
    network: Network
    # 主机基址
    rest_base: str
    ws_url: str
    # 留空时从 /system/config 读取
    chain_id: Optional[str] = None

    # REST 路径常量（相对 rest_base）
    system_time: str = "/system/time"
    system_config: str = "/system/config"
    markets: str = "/markets"
    onboarding: str = "/onboarding"
    auth: str = "/auth"
    orders: str = "/orders"
    order_by_id: str = "/orders/{order_id}"
    order_by_client_id: str = "/orders/by_client_id/{client_id}"
    account: str = "/account"
    balance: str = "/balance"
    positions: str = "/positions"

    # 签名消息中的请求路径（auth 消息里签的是带版本前缀的路径）
    auth_signed_path: str = "/v1/auth"


def make_endpoints_from_cfg(cfg: dict) -> Endpoints:
    try:
        px = cfg.get("paradex", {})
        net_str = str(px.get("network", "testnet")).lower()
        network = Network(net_str)

        rest_base = (px.get("rest_base") or {}).get(net_str) or DEFAULT_REST_BASE[net_str]
        ws_url = (px.get("ws") or {}).get(net_str) or DEFAULT_WS[net_str]
        chain_id = (px.get("chain_id") or {}).get(net_str) or None
    except (KeyError, ValueError) as e:
        raise ValueError(f"Invalid cfg for paradex endpoints: {e}") from e

    return Endpoints(
        network=network,
        rest_base=rest_base.rstrip("/"),
        ws_url=ws_url,
        chain_id=chain_id,
    )
