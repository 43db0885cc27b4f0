"""BridgeRequest — representação tipada de uma operação de bridge."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from eth_utils import decode_hex, is_hex, to_checksum_address
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from solders.pubkey import Pubkey

from core.errors import ValidationError

U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1
U256_MAX = 2**256 - 1


# ── Parsing helpers ─────────────────────────────────────────────────


def parse_hex_bytes(value: str | bytes, length: int, label: str) -> bytes:
    """Decode *value* into exactly *length* bytes or raise ValidationError."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str) and is_hex(value):
        try:
            raw = decode_hex(value)
        except ValueError as exc:
            raise ValidationError(f"{label} is not valid hex: {exc}") from exc
    else:
        raise ValidationError(f"{label} must be a hex string")

    if len(raw) != length:
        raise ValidationError(f"{label} must be {length} bytes, got {len(raw)}")
    return raw


def parse_evm_address(value: str | bytes, label: str = "address") -> bytes:
    """Return the 20 raw bytes of an EVM address."""
    return parse_hex_bytes(value, 20, label)


def parse_request_id(value: str | bytes) -> bytes:
    """Return the 32 raw bytes of a request id."""
    return parse_hex_bytes(value, 32, "requestId")


def parse_pubkey(value: str, label: str = "public key") -> Pubkey:
    """Parse a base58 ledger public key."""
    try:
        return Pubkey.from_string(value)
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"{label} is not a valid base58 public key") from exc


def _coerce_int(value: Any) -> Any:
    """Accept ints, decimal strings and 0x-hex strings (JSON carries bigints as text)."""
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer quantity")
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text, 10)
    return value


def _as_address_hex(value: Any) -> Any:
    try:
        return to_checksum_address(parse_evm_address(value))
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


Quantity = Annotated[int, BeforeValidator(_coerce_int), Field(ge=0, le=U256_MAX)]
U128 = Annotated[int, BeforeValidator(_coerce_int), Field(ge=0, le=U128_MAX)]
U64 = Annotated[int, BeforeValidator(_coerce_int), Field(ge=0, le=U64_MAX)]
EvmAddress = Annotated[str, BeforeValidator(_as_address_hex)]


class Direction(str, Enum):
    """Sentido da operação de bridge."""

    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


# ── EVM transaction ─────────────────────────────────────────────────


class EvmTransactionRequest(BaseModel):
    """Transação EIP-1559 (type 2) ainda não assinada."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    type: Literal[2] = 2
    chain_id: U64
    nonce: U64
    max_priority_fee_per_gas: U128
    max_fee_per_gas: U128
    gas_limit: U128
    to: EvmAddress
    value: U128 = 0
    data: str = "0x"

    @field_validator("data")
    @classmethod
    def data_is_hex(cls, v: str) -> str:
        """Calldata precisa ser hex com prefixo."""
        if not v.startswith("0x") or not is_hex(v):
            raise ValueError("data must be 0x-prefixed hex")
        return v.lower()

    @property
    def data_bytes(self) -> bytes:
        return decode_hex(self.data)

    @property
    def to_bytes(self) -> bytes:
        return decode_hex(self.to)

    def to_ledger_params(self) -> EvmTransactionParams:
        """Projeção usada pelo programa de custódia para reconstruir a tx."""
        return EvmTransactionParams(
            value=self.value,
            gas_limit=self.gas_limit,
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
            nonce=self.nonce,
            chain_id=self.chain_id,
        )


class EvmTransactionParams(BaseModel):
    """Parâmetros de gas/nonce no layout do programa de custódia."""

    model_config = ConfigDict(frozen=True)

    value: U128
    gas_limit: U128
    max_fee_per_gas: U128
    max_priority_fee_per_gas: U128
    nonce: U64
    chain_id: U64


# ── BridgeRequest ───────────────────────────────────────────────────


class BridgeRequest(BaseModel):
    """Operação de bridge identificada por ``request_id`` (chave single-flight)."""

    model_config = ConfigDict(frozen=True)

    request_id: bytes = Field(..., min_length=32, max_length=32)
    direction: Direction
    token_address: bytes = Field(..., min_length=20, max_length=20)
    amount: U128 = 0
    requester: str = Field(..., min_length=32, max_length=44, description="Pubkey base58 do dono")

    @field_validator("requester")
    @classmethod
    def requester_is_pubkey(cls, v: str) -> str:
        try:
            parse_pubkey(v, "requester")
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc
        return v

    @property
    def request_id_hex(self) -> str:
        return "0x" + self.request_id.hex()

    @property
    def token_address_hex(self) -> str:
        return to_checksum_address(self.token_address)
