# trading/errors.py
from typing import Optional

from trading.enums import Phase


class TradingError(Exception):
    """Base trading error. `phase` names the session phase that failed."""
    phase: Optional[Phase] = None

    def __init__(self, msg: str = "", **ctx):
        super().__init__(msg)
        self.msg = msg
        self.ctx = ctx

    def __str__(self):
        base = self.msg or self.__class__.__name__
        if self.ctx:
            details = ", ".join(f"{k}={v}" for k, v in self.ctx.items())
            return f"{base} [{details}]"
        return base


class InvalidKeyMaterial(TradingError):
    """Key is malformed or does not belong to the declared account."""
    phase = Phase.ONBOARDING


class NotOnboardedError(TradingError):
    """Venue refused to register the root account."""
    phase = Phase.ONBOARDING


class SignatureVerificationFailed(TradingError):
    """Venue (or local verify) rejected a StarkNet signature."""
    phase = Phase.AUTH


class CredentialExpired(TradingError):
    """No valid bearer credential and the immediate refresh failed."""
    phase = Phase.AUTH


class NetworkError(TradingError):
    """Transport failure that survived the allowed retries."""

    def __init__(self, msg: str = "", *, phase: Optional[Phase] = None, **ctx):
        super().__init__(msg, **ctx)
        if phase is not None:
            self.phase = phase


class BackpressureExceeded(TradingError):
    """Pending-command buffer of a degraded connection is full; resubscribe explicitly."""
    phase = Phase.STREAMING


class DecodeError(TradingError):
    """A single inbound frame could not be decoded."""
    phase = Phase.STREAMING


class InvalidOrderState(TradingError):
    """Order command not allowed in the order's current status."""
    phase = Phase.ORDER


class OrderRejected(TradingError):
    """Venue rejected an order command; the order record carries the terminal status."""
    phase = Phase.ORDER

    def __init__(self, msg: str = "", *, order=None, code: str = "", **ctx):
        if code:
            ctx["code"] = code
        super().__init__(msg, **ctx)
        self.order = order
        self.code = code


class InvalidOrderSpec(TradingError):
    """Order request failed local validation (size, side, type, unknown market)."""
    phase = Phase.ORDER


class PrecisionError(InvalidOrderSpec):
    """Price/size not aligned with the instrument's tick or increment."""
