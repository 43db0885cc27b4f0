"""Sign-respond request ids, byte-identical to the custody program's."""

from __future__ import annotations

from eth_abi.packed import encode_packed
from eth_utils import keccak

# Parameters the custody program pins for ERC20 legs.
ETHEREUM_SLIP44 = 60
KEY_VERSION = 0
SIGNING_ALGO = "ECDSA"
SIGNING_DEST = "ethereum"
SIGNING_PARAMS = ""

_PACKED_TYPES = ["string", "bytes", "uint32", "uint32", "string", "string", "string", "string"]


def generate_request_id(
    sender: str,
    transaction_data: bytes,
    path: str,
    slip44_chain_id: int = ETHEREUM_SLIP44,
    key_version: int = KEY_VERSION,
    algo: str = SIGNING_ALGO,
    dest: str = SIGNING_DEST,
    params: str = SIGNING_PARAMS,
) -> bytes:
    """keccak256 of the packed sign-respond arguments.

    Parameters
    ----------
    sender:
        Base58 key of the PDA that signs the CPI (the requester's vault
        authority), as a string.
    transaction_data:
        Unsigned type-2 payload (``0x02 || rlp``).
    path:
        Derivation path passed to the MPC network.
    """
    packed = encode_packed(
        _PACKED_TYPES,
        [sender, transaction_data, slip44_chain_id, key_version, path, algo, dest, params],
    )
    return keccak(packed)
