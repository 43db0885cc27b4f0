"""Bridge relayer — models package."""

from .bridge import BridgeRequest, Direction, EvmTransactionParams, EvmTransactionRequest
from .chain import (
    EventKind,
    MpcSignature,
    PendingDeposit,
    PendingWithdrawal,
    SignatureEvent,
    UserBalance,
    VaultConfig,
)
from .flow import FlowRecord, FlowState, ResponseMode, SettlementResult
from .requests import DepositNotification, WithdrawalNotification

__all__ = [
    "BridgeRequest",
    "DepositNotification",
    "Direction",
    "EventKind",
    "EvmTransactionParams",
    "EvmTransactionRequest",
    "FlowRecord",
    "FlowState",
    "MpcSignature",
    "PendingDeposit",
    "PendingWithdrawal",
    "ResponseMode",
    "SettlementResult",
    "SignatureEvent",
    "UserBalance",
    "VaultConfig",
    "WithdrawalNotification",
]
