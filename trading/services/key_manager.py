# trading/services/key_manager.py
import re
from typing import Any, Dict, List, Optional

from starknet_py.hash.address import compute_address
from starknet_py.hash.selector import get_selector_from_name
from starknet_py.hash.utils import message_signature, private_to_stark_key, verify_message_signature
from starknet_py.utils.typed_data import TypedData

from trading.enums import KeyRole
from trading.errors import InvalidKeyMaterial, SignatureVerificationFailed
from trading.models import AccountDerivation, Identity, Signature, StarkKey
from utils.logger import logger as default_logger, mask

# StarkNet curve order
STARK_CURVE_ORDER = 0x800000000000010FFFFFFFFFFFFFFFFB781126DCAE7B2321E66A241ADC64D2F

_ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _parse_felt(value: Any, what: str, role: KeyRole) -> int:
    if isinstance(value, int):
        n = value
    else:
        s = str(value or "").strip()
        try:
            n = int(s, 16)
        except ValueError:
            raise InvalidKeyMaterial(f"{what} is not hex", role=role.value) from None
    if n <= 0:
        raise InvalidKeyMaterial(f"{what} is zero", role=role.value)
    return n


def _parse_private_key(value: str, role: KeyRole) -> int:
    n = _parse_felt(value, "private key", role)
    if n >= STARK_CURVE_ORDER:
        raise InvalidKeyMaterial("private key outside the curve order", role=role.value)
    return n


def derive_account_address(public_key: int, derivation: AccountDerivation) -> int:
    """Paradex account address for a StarkNet public key (proxy deployed with salt = public key)."""
    calldata = [
        int(derivation.account_class_hash, 16),
        get_selector_from_name("initialize"),
        2,
        public_key,
        0,
    ]
    return compute_address(
        class_hash=int(derivation.proxy_class_hash, 16),
        constructor_calldata=calldata,
        salt=public_key,
        deployer_address=0,
    )


def message_hash(typed_data: Dict[str, Any], account_address: str) -> int:
    return TypedData.from_dict(typed_data).message_hash(int(account_address, 16))


def verify_signature(typed_data: Dict[str, Any], account_address: str,
                     signature: Signature, public_key: int) -> None:
    """Server-equivalent check of a signature; raises SignatureVerificationFailed."""
    h = message_hash(typed_data, account_address)
    if not verify_message_signature(h, [signature.r, signature.s], public_key):
        raise SignatureVerificationFailed(
            "signature does not verify against the public key",
            role=signature.role.value, account=mask(account_address),
        )


class _LoadedKey:
    __slots__ = ("role", "address", "address_int", "_priv", "public_key")

    def __init__(self, role: KeyRole, key: StarkKey, derivation: Optional[AccountDerivation]):
        self.role = role
        self._priv = _parse_private_key(key.private_key, role)
        self.address_int = _parse_felt(key.account_address, "account address", role)
        self.address = hex(self.address_int)
        self.public_key = private_to_stark_key(self._priv)

        if key.public_key:
            declared = _parse_felt(key.public_key, "public key", role)
            if declared != self.public_key:
                raise InvalidKeyMaterial("private key does not match the declared public key",
                                         role=role.value, account=mask(self.address))
        if derivation is not None and role is KeyRole.ROOT:
            expected = derive_account_address(self.public_key, derivation)
            if expected != self.address_int:
                raise InvalidKeyMaterial("key does not control the declared account",
                                         role=role.value, account=mask(self.address),
                                         derived=mask(hex(expected)))

    def sign(self, h: int) -> List[int]:
        r, s = message_signature(msg_hash=h, priv_key=self._priv)
        return [r, s]

    def __repr__(self):
        return f"_LoadedKey(role={self.role.value}, address={mask(self.address)}, private_key=***)"


class RoleSigner:
    """Capability for exactly one key role; exposes nothing but sign()."""
    __slots__ = ("_km", "_role")

    def __init__(self, km: "KeyManager", role: KeyRole):
        self._km = km
        self._role = role

    @property
    def role(self) -> KeyRole:
        return self._role

    def sign(self, payload: Dict[str, Any]) -> Signature:
        return self._km.sign(payload, self._role)

    def __repr__(self):
        return f"RoleSigner(role={self._role.value})"


class KeyManager:
    """
    Holds the root (onboarding) and subkey (auth / orders) StarkNet keys.

    Keys are validated once here; signatures are RFC-6979 deterministic over the
    SNIP-12 rev0 message hash bound to the role's account address.
    """

    def __init__(self, identity: Identity, subkey: StarkKey, chain_id: str,
                 derivation: Optional[AccountDerivation] = None, logger=None):
        self.log = logger or default_logger
        if not _ETH_ADDRESS_RE.match(identity.eth_address or ""):
            raise InvalidKeyMaterial("ethereum address is malformed", role=KeyRole.ROOT.value)
        self.chain_id = chain_id
        self.eth_address = identity.eth_address
        self._keys = {
            KeyRole.ROOT: _LoadedKey(KeyRole.ROOT, identity.root, derivation),
            KeyRole.SUBKEY: _LoadedKey(KeyRole.SUBKEY, subkey, derivation),
        }
        self.log.info(f"KeyManager ready root={mask(self.address(KeyRole.ROOT))} "
                      f"subkey={mask(self.address(KeyRole.SUBKEY))} chain_id={chain_id}")

    def _key(self, role: KeyRole) -> _LoadedKey:
        if not isinstance(role, KeyRole):
            raise TypeError(f"key role must be a KeyRole, got {type(role).__name__}")
        return self._keys[role]

    def address(self, role: KeyRole) -> str:
        return self._key(role).address

    def public_key(self, role: KeyRole) -> int:
        return self._key(role).public_key

    def public_key_hex(self, role: KeyRole) -> str:
        return hex(self._key(role).public_key)

    def message_hash(self, payload: Dict[str, Any], role: KeyRole) -> int:
        return message_hash(payload, self._key(role).address)

    def sign(self, payload: Dict[str, Any], role: KeyRole) -> Signature:
        key = self._key(role)
        h = message_hash(payload, key.address)
        r, s = key.sign(h)
        self.log.debug(f"signed {payload.get('primaryType')} role={role.value} hash={hex(h)}")
        return Signature(r=r, s=s, role=role)

    def signer(self, role: KeyRole) -> RoleSigner:
        self._key(role)
        return RoleSigner(self, role)

    def verify(self, payload: Dict[str, Any], signature: Signature) -> None:
        key = self._key(signature.role)
        verify_signature(payload, key.address, signature, key.public_key)

    def __repr__(self):
        return (f"KeyManager(root={mask(self.address(KeyRole.ROOT))}, "
                f"subkey={mask(self.address(KeyRole.SUBKEY))}, private_keys=***)")

    __str__ = __repr__
