# trading/models.py
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable, Tuple

from trading.enums import (
    KeyRole, Side, OrderType, OrderInstruction, OrderStatus,
    Visibility, SubscriptionState, Phase,
)

TERMINAL_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED})


# --- identity / keys ---------------------------------------------------------

@dataclass(frozen=True)
class StarkKey:
    account_address: str
    private_key: str = field(repr=False)
    public_key: Optional[str] = None     # declared; cross-checked against the private key


@dataclass(frozen=True)
class Identity:
    eth_address: str
    root: StarkKey


@dataclass(frozen=True)
class AccountDerivation:
    """Class hashes needed to recompute a Paradex account address from its public key."""
    proxy_class_hash: str
    account_class_hash: str


@dataclass(frozen=True)
class Signature:
    r: int
    s: int
    role: KeyRole

    def header(self) -> str:
        """["r","s"] as the venue expects in PARADEX-STARKNET-SIGNATURE."""
        return f'["{self.r}","{self.s}"]'


# --- credential ----------------------------------------------------------------

@dataclass
class Credential:
    token: str = field(repr=False)
    issued_at: float          # epoch seconds
    expires_at: float         # epoch seconds
    revoked: bool = False

    @property
    def validity_s(self) -> float:
        return max(0.0, self.expires_at - self.issued_at)

    def remaining(self, now: float) -> float:
        return self.expires_at - now

    def is_valid(self, now: float) -> bool:
        return not self.revoked and now < self.expires_at


# --- instruments ---------------------------------------------------------------

@dataclass
class Instrument:
    symbol: str
    price_tick: Decimal       # 价格步长
    size_increment: Decimal   # 数量步长
    min_notional: Decimal     # 最小名义价值
    base_currency: str = ""
    quote_currency: str = ""


# --- streaming -----------------------------------------------------------------

@dataclass
class Subscription:
    channel: str
    visibility: Visibility
    state: SubscriptionState = SubscriptionState.CONNECTING
    acked: bool = False
    messages: int = 0
    last_seq: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    handler: Optional[Callable[[Any], None]] = field(default=None, repr=False, compare=False)


@dataclass
class StreamEvent:
    channel: str
    kind: str                          # channel prefix, e.g. "bbo", "orders"
    data: Any                          # typed payload (dataclass) or raw dict
    connection: Visibility
    received_at: float = field(default_factory=time.time)


@dataclass
class DecodeErrorEvent:
    connection: Visibility
    error: str
    raw: str = ""


@dataclass
class GapEvent:
    channel: str
    expected: int
    received: int


@dataclass
class BboEvent:
    market: str
    bid: Optional[Decimal]
    bid_size: Optional[Decimal]
    ask: Optional[Decimal]
    ask_size: Optional[Decimal]
    ts: Optional[int] = None
    seq_no: Optional[int] = None


@dataclass
class TradeEvent:
    market: str
    trade_id: str
    side: Side
    price: Decimal
    size: Decimal
    ts: Optional[int] = None


@dataclass
class OrderBookEvent:
    market: str
    update_type: str
    inserts: List[Tuple[str, Decimal, Decimal]]
    updates: List[Tuple[str, Decimal, Decimal]]
    deletes: List[Tuple[str, Decimal, Decimal]]
    seq_no: Optional[int] = None
    ts: Optional[int] = None


@dataclass
class Fill:
    fill_id: str
    order_id: Optional[str]
    client_id: Optional[str]
    market: str
    side: Side
    price: Decimal
    size: Decimal
    fee: Decimal
    ts: int
    raw: Optional[dict] = None


# --- orders --------------------------------------------------------------------

@dataclass
class OrderSpec:
    market: str
    side: Side
    size: Decimal
    order_type: OrderType = OrderType.LIMIT
    price: Optional[Decimal] = None
    instruction: OrderInstruction = OrderInstruction.GTC
    client_id: Optional[str] = None
    reduce_only: bool = False


@dataclass
class OrderChanges:
    price: Optional[Decimal] = None
    size: Optional[Decimal] = None


@dataclass
class Order:
    client_id: str
    market: str
    side: Side
    order_type: OrderType
    size: Decimal
    price: Optional[Decimal]
    instruction: OrderInstruction = OrderInstruction.GTC
    reduce_only: bool = False
    status: OrderStatus = OrderStatus.NEW
    server_id: Optional[str] = None

    filled_size: Decimal = Decimal("0")
    avg_fill_price: Optional[Decimal] = None
    cancel_reason: Optional[str] = None
    cancel_requested: bool = False
    pending_changes: Optional[OrderChanges] = None
    last_error: Optional[str] = None

    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    # (from, to, source, ts)
    history: List[Tuple[OrderStatus, OrderStatus, str, float]] = field(default_factory=list)
    seen_fills: set = field(default_factory=set, repr=False)
    fill_sum: Decimal = field(default=Decimal("0"), repr=False)   # sum of fills-channel deltas

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def remaining_size(self) -> Decimal:
        return max(Decimal("0"), self.size - self.filled_size)


@dataclass
class OrderUpdate:
    """Normalized order-state news from a direct response or the private stream."""
    status: OrderStatus
    source: str                                # "response" | "stream"
    client_id: Optional[str] = None
    server_id: Optional[str] = None
    filled_size: Optional[Decimal] = None
    fill_delta: Optional[Decimal] = None       # size of a single fill (fills channel)
    fill_id: Optional[str] = None
    avg_fill_price: Optional[Decimal] = None
    price: Optional[Decimal] = None
    size: Optional[Decimal] = None
    cancel_reason: Optional[str] = None
    ts: float = field(default_factory=time.time)


# --- account -------------------------------------------------------------------

@dataclass
class AccountSummary:
    account: str
    status: str = ""
    account_value: Optional[Decimal] = None
    free_collateral: Optional[Decimal] = None
    total_collateral: Optional[Decimal] = None
    initial_margin_requirement: Optional[Decimal] = None
    maintenance_margin_requirement: Optional[Decimal] = None
    settlement_asset: str = ""
    updated_at: Optional[int] = None


@dataclass
class Balance:
    token: str
    size: Decimal
    last_updated_at: Optional[int] = None


@dataclass
class Position:
    market: str
    side: str                      # LONG / SHORT
    size: Decimal
    status: str = ""
    average_entry_price: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None
    liquidation_price: Optional[Decimal] = None
    position_id: str = ""
    last_updated_at: Optional[int] = None


# --- session -------------------------------------------------------------------

@dataclass
class OnboardingResult:
    already_onboarded: bool
    account_address: str
    timestamp: int


@dataclass
class TeardownReport:
    cancelled: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    connections_closed: bool = True
    timed_out: bool = False


@dataclass
class SessionReport:
    ok: bool
    failed_phase: Optional[Phase] = None
    error: Optional[str] = None
    onboarding: Optional[OnboardingResult] = None
    teardown: Optional[TeardownReport] = None
    account: Optional[AccountSummary] = None
    balances: List[Balance] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    orders: List[Order] = field(default_factory=list)

    @property
    def non_terminal_orders(self) -> List[Order]:
        return [o for o in self.orders if not o.is_terminal]

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1
