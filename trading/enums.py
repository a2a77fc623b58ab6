# trading/enums.py
from enum import Enum

class Network(Enum):
    TESTNET = "testnet"
    PRODUCTION = "production"

class KeyRole(Enum):
    ROOT = "root"
    SUBKEY = "subkey"

class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"

    def chain_side(self) -> str:
        """Felt encoding used inside signed order messages."""
        return "1" if self is Side.BUY else "2"

class OrderType(Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"

class OrderInstruction(Enum):
    GTC = "GTC"
    POST_ONLY = "POST_ONLY"
    IOC = "IOC"

class OrderStatus(Enum):
    NEW = "new"
    SUBMITTED = "submitted"
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    MODIFY_PENDING = "modify_pending"
    REJECTED = "rejected"

class Visibility(Enum):
    PUBLIC = "public"
    PRIVATE = "private"

class SubscriptionState(Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    CLOSED = "closed"

class Phase(Enum):
    ONBOARDING = "onboarding"
    AUTH = "auth"
    STREAMING = "streaming"
    ORDER = "order"
    TEARDOWN = "teardown"
