# trading/services/auth_session.py
import asyncio
import base64
import binascii
import json
import time
from dataclasses import replace
from typing import Callable, Optional

from infra.http_client import HttpError, ParadexApiError, is_transport_error
from trading.config import AuthSettings
from trading.enums import KeyRole, Phase
from trading.errors import CredentialExpired, NetworkError, SignatureVerificationFailed, TradingError
from trading.models import Credential
from trading.services.key_manager import KeyManager
from trading.services.typed_data import build_auth_typed_data
from utils.logger import logger as default_logger, mask


def jwt_expiry(token: str) -> Optional[float]:
    """`exp` claim (epoch seconds) of a JWT, without verifying it."""
    try:
        seg = token.split(".")[1]
        claims = json.loads(base64.urlsafe_b64decode(seg + "=" * (-len(seg) % 4)))
    except (IndexError, ValueError, binascii.Error):
        return None
    if not isinstance(claims, dict) or claims.get("exp") is None:
        return None
    try:
        return float(claims["exp"])
    except (TypeError, ValueError):
        return None


class AuthSession:
    """
    Owns the bearer credential.

    - authenticate(): subkey-signed POST /auth, records the Credential
    - ensure_valid(): awaited before every privileged call; refreshes once less
      than `refresh_fraction` of the validity window is left
    - concurrent callers share one in-flight refresh task
    """

    def __init__(self, http_client, endpoints, keys: KeyManager,
                 settings: Optional[AuthSettings] = None, logger=None,
                 *, clock: Optional[Callable[[], float]] = None):
        self._http = http_client
        self._ep = endpoints
        self._keys = keys
        self._signer = keys.signer(KeyRole.SUBKEY)
        self.settings = settings or AuthSettings()
        self.log = logger or default_logger
        if clock is None:
            if hasattr(http_client, "server_time_ms"):
                clock = lambda: http_client.server_time_ms() / 1000.0
            else:
                clock = time.time
        self._clock = clock

        self._cred: Optional[Credential] = None
        self._inflight: Optional[asyncio.Task] = None
        self._released = False
        self.refresh_count = 0

    @property
    def credential(self) -> Optional[Credential]:
        return self._cred

    @property
    def account_address(self) -> str:
        return self._keys.address(KeyRole.SUBKEY)

    def is_valid(self) -> bool:
        return self._cred is not None and self._cred.is_valid(self._clock())

    def needs_refresh(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        c = self._cred
        if c is None or not c.is_valid(now):
            return True
        return c.remaining(now) < self.settings.refresh_fraction * c.validity_s

    # ---- acquire -------------------------------------------------------------
    async def authenticate(self) -> Credential:
        if self._released:
            raise CredentialExpired("auth session already released")
        return await self._refresh()

    async def _refresh(self) -> Credential:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._do_authenticate())
        # a cancelled waiter must not cancel the shared refresh
        return await asyncio.shield(self._inflight)

    async def _do_authenticate(self) -> Credential:
        for attempt in (1, 2):
            try:
                return await self._auth_once()
            except HttpError as e:
                if attempt == 2:
                    raise NetworkError(f"auth failed after retry: {e}", phase=Phase.AUTH,
                                       status=e.status) from e
                self.log.warning(f"[Auth] transport error, retrying once: {e}")

    async def _auth_once(self) -> Credential:
        ts = int(self._clock())
        expiration = ts + int(self.settings.signature_ttl_s)
        typed = build_auth_typed_data(self._keys.chain_id, ts, expiration, path=self._ep.auth_signed_path)
        sig = self._signer.sign(typed)
        headers = {
            "PARADEX-STARKNET-ACCOUNT": self.account_address,
            "PARADEX-STARKNET-SIGNATURE": sig.header(),
            "PARADEX-TIMESTAMP": str(ts),
            "PARADEX-SIGNATURE-EXPIRATION": str(expiration),
        }
        try:
            resp = await self._http.post_signed(self._ep.auth, headers=headers)
        except ParadexApiError as e:
            raise SignatureVerificationFailed(f"venue rejected auth: {e.msg or e.code}",
                                              code=e.code, status=e.status) from e
        except HttpError as e:
            if is_transport_error(e):
                raise
            raise SignatureVerificationFailed(f"venue rejected auth: {e}", status=e.status) from e

        token = resp.get("jwt_token") if isinstance(resp, dict) else None
        if not token:
            raise NetworkError("auth response carried no jwt_token", phase=Phase.AUTH)

        issued = self._clock()
        expires = jwt_expiry(token) or issued + float(self.settings.default_ttl_s)
        if expires <= issued:
            expires = issued + float(self.settings.default_ttl_s)
        self._cred = Credential(token=token, issued_at=issued, expires_at=expires)
        self.refresh_count += 1
        self.log.info(f"[Auth] credential issued token={mask(token)} valid_for={expires - issued:.0f}s")
        return self._cred

    # ---- use -----------------------------------------------------------------
    async def ensure_valid(self) -> Credential:
        if self._released:
            raise CredentialExpired("auth session already released")
        if not self.needs_refresh():
            return self._cred
        try:
            return await self._refresh()
        except SignatureVerificationFailed:
            raise
        except TradingError as e:
            if self.is_valid():
                self.log.warning(f"[Auth] refresh failed, current credential still valid: {e}")
                return self._cred
            raise CredentialExpired("credential expired and refresh failed", cause=str(e)) from e

    async def bearer(self) -> str:
        """Token provider for HttpClient private requests and the private stream."""
        return (await self.ensure_valid()).token

    def invalidate(self) -> None:
        """Venue answered 401: drop the credential so the next ensure_valid re-authenticates."""
        if self._cred is not None and not self._cred.revoked:
            self._cred = replace(self._cred, revoked=True)
            self.log.warning("[Auth] credential invalidated")

    def _next_check_delay(self) -> float:
        check = float(self.settings.refresh_check_s)
        c = self._cred
        if c is None:
            return check
        until_refresh = c.remaining(self._clock()) - self.settings.refresh_fraction * c.validity_s
        return max(0.05, min(check, until_refresh))

    async def run_refresh_loop(self, stop_event: asyncio.Event) -> None:
        """Refresh ahead of expiry until stop_event is set."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._next_check_delay())
                break
            except asyncio.TimeoutError:
                pass
            if self._released:
                break
            if not self.needs_refresh():
                continue
            try:
                await self._refresh()
            except SignatureVerificationFailed:
                raise
            except TradingError as e:
                if not self.is_valid():
                    raise CredentialExpired("credential expired and refresh failed", cause=str(e)) from e
                self.log.warning(f"[Auth] scheduled refresh failed, will retry: {e}")

    async def release(self) -> None:
        """Teardown: stop any refresh and revoke the credential locally."""
        self._released = True
        t = self._inflight
        if t is not None and not t.done():
            t.cancel()
            try:
                await t
            except (asyncio.CancelledError, Exception):
                pass
        if self._cred is not None:
            self._cred = replace(self._cred, revoked=True)
        self.log.info("[Auth] credential released")
