"""Registros on-chain decodificados — contas do programa de custódia e eventos MPC."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from eth_utils import to_checksum_address


class EventKind(str, Enum):
    """Tipo de evento emitido pelo programa de chain signatures."""

    SIGNATURE = "SIGNATURE"          # assinatura da perna EVM
    READ_RESPONSE = "READ_RESPONSE"  # resultado atestado da tx EVM


@dataclass(frozen=True, slots=True)
class MpcSignature:
    """Assinatura ECDSA produzida pelo signer MPC (big R afim, s, recovery id)."""

    big_r_x: bytes
    big_r_y: bytes
    s: bytes
    recovery_id: int

    @property
    def r_int(self) -> int:
        return int.from_bytes(self.big_r_x, "big")

    @property
    def s_int(self) -> int:
        return int.from_bytes(self.s, "big")

    @property
    def v(self) -> int:
        """``v`` legado (27/28); em tx type 2 usa-se ``recovery_id`` como y-parity."""
        return self.recovery_id + 27


@dataclass(frozen=True, slots=True)
class SignatureEvent:
    """Resposta do signer MPC correlacionada a um ``request_id``.

    ``serialized_output`` é vazio para eventos ``SIGNATURE``.
    """

    request_id: bytes
    kind: EventKind
    signature: MpcSignature
    responder: str
    serialized_output: bytes = b""
    ledger_signature: str | None = None

    @property
    def request_id_hex(self) -> str:
        return "0x" + self.request_id.hex()


@dataclass(frozen=True, slots=True)
class PendingDeposit:
    """Conta ``pending_erc20_deposit`` indexada pelo ``request_id``."""

    requester: str
    amount: int
    erc20_address: bytes
    path: str
    request_id: bytes


@dataclass(frozen=True, slots=True)
class PendingWithdrawal:
    """Conta ``pending_erc20_withdrawal`` indexada pelo ``request_id``."""

    requester: str
    amount: int
    erc20_address: bytes
    recipient_address: bytes
    path: str
    request_id: bytes

    @property
    def recipient_checksum(self) -> str:
        return to_checksum_address(self.recipient_address)


@dataclass(frozen=True, slots=True)
class UserBalance:
    """Saldo creditado de um usuário para um token ERC20."""

    amount: int


@dataclass(frozen=True, slots=True)
class VaultConfig:
    """Singleton com o endereço confiável do signer MPC raiz."""

    mpc_root_signer_address: bytes

    @property
    def signer_checksum(self) -> str:
        return to_checksum_address(self.mpc_root_signer_address)
