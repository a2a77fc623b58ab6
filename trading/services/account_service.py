# trading/services/account_service.py
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from infra.http_client import HttpError, ParadexApiError
from trading.errors import NetworkError
from trading.models import AccountSummary, Balance, Position
from utils.logger import logger as default_logger


def _dec_or_none(x) -> Optional[Decimal]:
    if x is None:
        return None
    x = str(x).strip()
    if not x:
        return None
    try:
        return Decimal(x)
    except InvalidOperation:
        return None


def _dec_zero_if_empty(x) -> Decimal:
    v = _dec_or_none(x)
    return v if v is not None else Decimal(0)


def _int_or_none(x) -> Optional[int]:
    return int(x) if str(x or "").isdigit() else None


class AccountService:
    """
    Account / balance / position queries (read-only, JWT-authenticated).
    """
    def __init__(self, http_client, endpoints, logger=None) -> None:
        self._http = http_client
        self._ep = endpoints
        self.log = logger or default_logger

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            return await self._http.get_private(path, params=params)
        except (HttpError, ParadexApiError) as e:
            self.log.warning(f"[Account] GET {path} failed: {e}")
            raise NetworkError(f"GET {path} failed: {e}", status=e.status) from e

    async def get_account(self) -> AccountSummary:
        """GET /account"""
        d = await self._get(self._ep.account)
        return AccountSummary(
            account=str(d.get("account", "")),
            status=str(d.get("status", "")),
            account_value=_dec_or_none(d.get("account_value")),
            free_collateral=_dec_or_none(d.get("free_collateral")),
            total_collateral=_dec_or_none(d.get("total_collateral")),
            initial_margin_requirement=_dec_or_none(d.get("initial_margin_requirement")),
            maintenance_margin_requirement=_dec_or_none(d.get("maintenance_margin_requirement")),
            settlement_asset=str(d.get("settlement_asset", "")),
            updated_at=_int_or_none(d.get("updated_at")),
        )

    async def get_balances(self) -> List[Balance]:
        """GET /balance -> one row per token."""
        resp = await self._get(self._ep.balance)
        return [
            Balance(token=str(it.get("token", "")),
                    size=_dec_zero_if_empty(it.get("size")),
                    last_updated_at=_int_or_none(it.get("last_updated_at")))
            for it in resp.get("results", []) or []
        ]

    async def get_positions(self, market: Optional[str] = None) -> List[Position]:
        """GET /positions; closed positions are kept, filter on `status` if needed."""
        resp = await self._get(self._ep.positions)
        positions: List[Position] = []
        for it in resp.get("results", []) or []:
            if market and it.get("market") != market:
                continue
            positions.append(
                Position(
                    market=str(it.get("market", "")),
                    side=str(it.get("side", "")).upper(),
                    size=_dec_zero_if_empty(it.get("size")),
                    status=str(it.get("status", "")),
                    average_entry_price=_dec_or_none(it.get("average_entry_price")),
                    unrealized_pnl=_dec_or_none(it.get("unrealized_pnl")),
                    liquidation_price=_dec_or_none(it.get("liquidation_price")),
                    position_id=str(it.get("id", "")),
                    last_updated_at=_int_or_none(it.get("last_updated_at")),
                )
            )
        return positions
