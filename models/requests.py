"""Schemas dos corpos HTTP recebidos — validados antes de qualquer chamada on-chain."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.errors import ValidationError
from models.bridge import EvmAddress, EvmTransactionRequest, parse_pubkey, parse_request_id


class DepositNotification(BaseModel):
    """``POST /notify-deposit``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    user_address: str = Field(..., alias="userAddress", min_length=1)
    erc20_address: EvmAddress = Field(..., alias="erc20Address")
    ethereum_address: EvmAddress = Field(..., alias="ethereumAddress")

    @field_validator("user_address")
    @classmethod
    def user_is_pubkey(cls, v: str) -> str:
        try:
            parse_pubkey(v, "userAddress")
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc
        return v

    @property
    def single_flight_key(self) -> str:
        """Depósitos ainda não têm request id; a chave é usuário + token."""
        return f"deposit:{self.user_address}:{self.erc20_address.lower()}"


class WithdrawalNotification(BaseModel):
    """``POST /notify-withdrawal`` e ``POST /relayer/notify-withdrawal``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    request_id: str = Field(..., alias="requestId", min_length=1)
    erc20_address: EvmAddress = Field(..., alias="erc20Address")
    transaction_params: EvmTransactionRequest = Field(..., alias="transactionParams")

    @field_validator("request_id")
    @classmethod
    def request_id_is_32_bytes(cls, v: str) -> str:
        try:
            raw = parse_request_id(v)
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc
        return "0x" + raw.hex()

    @property
    def request_id_bytes(self) -> bytes:
        return bytes.fromhex(self.request_id[2:])
