"""AddressDeriver — MPC epsilon derivation of per-requester EVM addresses.

The derived key is ``epsilon·G + base`` on secp256k1 where ``epsilon`` is
the keccak256 of a comma-joined derivation string. The custody program
and the MPC network compute the same value independently, so every byte
of the derivation string (tag, chain id, separators) must stay exactly
as defined here.
"""

from __future__ import annotations

from eth_keys import keys
from eth_keys.backends.native.jacobian import fast_add, fast_multiply
from eth_keys.constants import SECPK1_G, SECPK1_N, SECPK1_P
from eth_utils import decode_hex, is_hex, keccak, to_canonical_address

from core.errors import DerivationError

__all__ = [
    "EPSILON_DERIVATION_PREFIX",
    "SOLANA_CHAIN_ID",
    "derive_epsilon",
    "derive_evm_address",
    "derive_public_key",
    "parse_base_public_key",
]

EPSILON_DERIVATION_PREFIX = "sig.network v1.0.0 epsilon derivation"

# CAIP-2 style id of the requesting ledger, as hashed by the MPC network.
SOLANA_CHAIN_ID = "0x800001f5"

Point = tuple[int, int]


def derive_epsilon(requester: str, path: str) -> int:
    """Hash ``"<tag>,<chain id>,<requester>,<path>"`` to a curve scalar."""
    message = f"{EPSILON_DERIVATION_PREFIX},{SOLANA_CHAIN_ID},{requester},{path}"
    return int.from_bytes(keccak(text=message), "big")


def parse_base_public_key(base_public_key: str | bytes) -> Point:
    """Decode a 65-byte uncompressed public key (``0x04 || x || y``).

    Raises
    ------
    DerivationError
        On wrong length, missing ``0x04`` marker, or a point that is
        not on the curve.
    """
    if isinstance(base_public_key, str):
        if not is_hex(base_public_key):
            raise DerivationError("base public key must be hex encoded")
        raw = decode_hex(base_public_key)
    else:
        raw = bytes(base_public_key)

    if len(raw) != 65:
        raise DerivationError(f"base public key must be 65 bytes, got {len(raw)}")
    if raw[0] != 0x04:
        raise DerivationError("base public key must be uncompressed (0x04 prefix)")

    x = int.from_bytes(raw[1:33], "big")
    y = int.from_bytes(raw[33:], "big")
    if x >= SECPK1_P or y >= SECPK1_P or (y * y - x * x * x - 7) % SECPK1_P != 0:
        raise DerivationError("base public key is not a point on secp256k1")
    return x, y


def derive_public_key(path: str, requester: str, base_public_key: str | bytes) -> bytes:
    """Return the derived key as 65 uncompressed bytes."""
    base_point = parse_base_public_key(base_public_key)

    epsilon = derive_epsilon(requester, path) % SECPK1_N
    if epsilon == 0:
        raise DerivationError("epsilon reduced to zero")

    x, y = fast_add(fast_multiply(SECPK1_G, epsilon), base_point)
    if x == 0 and y == 0:
        raise DerivationError("derived point is the point at infinity")

    return b"\x04" + x.to_bytes(32, "big") + y.to_bytes(32, "big")


def derive_evm_address(path: str, requester: str, base_public_key: str | bytes) -> str:
    """EIP-55 address of the derived key (last 20 bytes of keccak(x || y))."""
    derived = derive_public_key(path, requester, base_public_key)
    return keys.PublicKey(derived[1:]).to_checksum_address()


def derive_evm_address_bytes(path: str, requester: str, base_public_key: str | bytes) -> bytes:
    return to_canonical_address(derive_evm_address(path, requester, base_public_key))
