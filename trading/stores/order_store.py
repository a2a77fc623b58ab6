# trading/stores/order_store.py
import copy
from typing import Dict, List, Optional

from trading.models import Order


class OrderStore:
    """
    In-memory order view keyed by client_id and server_id.
    Single writer (OrderEngine / ReconcileService); readers get copies.
    """

    def __init__(self) -> None:
        self._by_cl: Dict[str, Order] = {}
        self._by_id: Dict[str, Order] = {}

    def add(self, order: Order) -> None:
        if order.client_id in self._by_cl:
            raise KeyError(f"duplicate client_id {order.client_id}")
        self._by_cl[order.client_id] = order
        if order.server_id:
            self._by_id[order.server_id] = order

    def bind_server_id(self, order: Order, server_id: str) -> None:
        if not server_id or order.server_id == server_id:
            return
        if order.server_id:
            self._by_id.pop(order.server_id, None)
        order.server_id = server_id
        self._by_id[server_id] = order

    def get_by_cl(self, client_id: str) -> Optional[Order]:
        return self._by_cl.get(client_id)

    def get_by_id(self, server_id: str) -> Optional[Order]:
        return self._by_id.get(server_id)

    def find(self, *, server_id: Optional[str] = None, client_id: Optional[str] = None) -> Optional[Order]:
        """Server id first, client id as fallback."""
        order = self._by_id.get(server_id) if server_id else None
        if order is None and client_id:
            order = self._by_cl.get(client_id)
        return order

    def resolve(self, order_id: str) -> Optional[Order]:
        """Either kind of id."""
        return self._by_cl.get(order_id) or self._by_id.get(order_id)

    def all(self) -> List[Order]:
        return list(self._by_cl.values())

    def snapshot(self) -> List[Order]:
        return [copy.deepcopy(o) for o in self._by_cl.values()]

    def __len__(self) -> int:
        return len(self._by_cl)
