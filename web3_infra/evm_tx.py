"""EIP-1559 (type 2) transaction encoding for MPC-signed transfers.

The MPC signer signs ``keccak256(0x02 || rlp(unsigned fields))``; the
custody program rebuilds the same payload on-chain, so field order and
the empty access list are fixed.
"""

from __future__ import annotations

import rlp
from eth_abi import encode as abi_encode
from eth_keys import keys
from eth_utils import keccak, to_canonical_address, to_checksum_address

from core.errors import ValidationError
from models.bridge import EvmTransactionRequest
from models.chain import MpcSignature

__all__ = [
    "ERC20_BALANCE_OF_SELECTOR",
    "ERC20_TRANSFER_SELECTOR",
    "encode_balance_of",
    "encode_erc20_transfer",
    "encode_signed_transaction",
    "encode_unsigned_transaction",
    "recover_signer",
    "signing_hash",
]

TYPE_2_PREFIX = b"\x02"

ERC20_TRANSFER_SELECTOR = keccak(text="transfer(address,uint256)")[:4]
ERC20_BALANCE_OF_SELECTOR = keccak(text="balanceOf(address)")[:4]


def encode_erc20_transfer(recipient: str, amount: int) -> bytes:
    """Calldata for ``transfer(recipient, amount)``."""
    return ERC20_TRANSFER_SELECTOR + abi_encode(
        ["address", "uint256"], [to_checksum_address(recipient), amount]
    )


def encode_balance_of(owner: str) -> bytes:
    return ERC20_BALANCE_OF_SELECTOR + abi_encode(["address"], [to_checksum_address(owner)])


def _unsigned_fields(tx: EvmTransactionRequest) -> list:
    return [
        tx.chain_id,
        tx.nonce,
        tx.max_priority_fee_per_gas,
        tx.max_fee_per_gas,
        tx.gas_limit,
        to_canonical_address(tx.to),
        tx.value,
        tx.data_bytes,
        [],
    ]


def encode_unsigned_transaction(tx: EvmTransactionRequest) -> bytes:
    """Signing payload ``0x02 || rlp([...])``; also the request-id input."""
    return TYPE_2_PREFIX + rlp.encode(_unsigned_fields(tx))


def signing_hash(tx: EvmTransactionRequest) -> bytes:
    return keccak(encode_unsigned_transaction(tx))


def encode_signed_transaction(tx: EvmTransactionRequest, signature: MpcSignature) -> bytes:
    """Raw broadcastable transaction with the MPC signature attached.

    ``big_r.x`` is ``r`` and the recovery id is the y-parity; big R's
    ``y`` coordinate is not part of the encoding.
    """
    if signature.recovery_id not in (0, 1):
        raise ValidationError(f"recovery id must be 0 or 1, got {signature.recovery_id}")
    fields = _unsigned_fields(tx) + [
        signature.recovery_id,
        signature.r_int,
        signature.s_int,
    ]
    return TYPE_2_PREFIX + rlp.encode(fields)


def recover_signer(message_hash: bytes, signature: MpcSignature) -> str:
    """Checksum address that produced *signature* over *message_hash*.

    Raises
    ------
    ValidationError
        If the signature components are out of range or recovery fails.
    """
    if signature.recovery_id > 3:
        raise ValidationError(f"invalid recovery id {signature.recovery_id}")
    try:
        sig = keys.Signature(vrs=(signature.recovery_id % 2, signature.r_int, signature.s_int))
        public_key = sig.recover_public_key_from_msg_hash(message_hash)
    except Exception as exc:
        raise ValidationError(f"signature recovery failed: {exc}") from exc
    return public_key.to_checksum_address()
