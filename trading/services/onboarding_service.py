# trading/services/onboarding_service.py
from typing import Callable, Optional

from infra.http_client import HttpError, ParadexApiError, is_transport_error
from trading.enums import KeyRole, Phase
from trading.errors import InvalidKeyMaterial, NetworkError, NotOnboardedError
from trading.idempotency import now_ms
from trading.models import Identity, OnboardingResult
from trading.services.key_manager import KeyManager
from trading.services.typed_data import build_onboarding_typed_data
from utils.logger import logger as default_logger, mask


class OnboardingService:
    """
    One-time registration of the root account with the venue.

    Status first (GET /onboarding?address=, 404 => not onboarded); only an
    unregistered account is signed for (root key) and submitted.
    """

    def __init__(self, http_client, endpoints, keys: KeyManager, logger=None,
                 *, clock_ms: Optional[Callable[[], int]] = None):
        self._http = http_client
        self._ep = endpoints
        self._keys = keys
        self.log = logger or default_logger
        self._clock_ms = clock_ms or now_ms

    async def is_onboarded(self, address: str) -> Optional[bool]:
        """True/False from the status endpoint; None when the status could not be read."""
        try:
            await self._http.get_public(self._ep.onboarding, params={"address": address})
            return True
        except (ParadexApiError, HttpError) as e:
            if getattr(e, "status", None) == 404:
                return False
            self.log.warning(f"[Onboarding] status check failed for {mask(address)}: {e}")
            return None

    async def ensure_onboarded(self, identity: Identity) -> OnboardingResult:
        address = self._keys.address(KeyRole.ROOT)
        if int(identity.root.account_address, 16) != int(address, 16):
            raise InvalidKeyMaterial("identity does not match the loaded root key",
                                     account=mask(identity.root.account_address))

        status = await self.is_onboarded(address)
        if status:
            self.log.info(f"[Onboarding] account {mask(address)} already onboarded")
            return OnboardingResult(already_onboarded=True, account_address=address,
                                    timestamp=self._clock_ms())

        typed = build_onboarding_typed_data(self._keys.chain_id)
        sig = self._keys.sign(typed, KeyRole.ROOT)
        headers = {
            "PARADEX-ETHEREUM-ACCOUNT": identity.eth_address,
            "PARADEX-STARKNET-ACCOUNT": address,
            "PARADEX-STARKNET-SIGNATURE": sig.header(),
        }
        body = {"public_key": self._keys.public_key_hex(KeyRole.ROOT)}

        # one resubmission on transport failure
        for attempt in (1, 2):
            try:
                self.log.info(f"[Onboarding] POST {self._ep.onboarding} account={mask(address)} attempt={attempt}")
                await self._http.post_signed(self._ep.onboarding, headers=headers, json_body=body)
                break
            except ParadexApiError as e:
                raise NotOnboardedError(f"venue rejected onboarding: {e.msg or e.code}",
                                        code=e.code, status=e.status) from e
            except HttpError as e:
                if not is_transport_error(e):
                    raise NotOnboardedError(f"venue rejected onboarding: {e}", status=e.status) from e
                if attempt == 2:
                    raise NetworkError(f"onboarding failed after resubmission: {e}",
                                       phase=Phase.ONBOARDING, status=e.status) from e
                self.log.warning(f"[Onboarding] transport error, resubmitting: {e}")

        self.log.info(f"[Onboarding] account {mask(address)} onboarded")
        return OnboardingResult(already_onboarded=False, account_address=address,
                                timestamp=self._clock_ms())
