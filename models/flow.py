"""FlowRecord — estado observável de um fluxo de assinatura e liquidação."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from models.bridge import Direction


class FlowState(str, Enum):
    """Estados da máquina de estados do orquestrador."""

    ADMITTED = "ADMITTED"
    PREPARING = "PREPARING"  # depósito: monitoramento de saldo e depositErc20
    VALIDATING = "VALIDATING"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE"
    SETTLING = "SETTLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({FlowState.COMPLETED, FlowState.FAILED, FlowState.TIMED_OUT})


class ResponseMode(str, Enum):
    """Semântica de resposta HTTP do ponto de entrada."""

    ACCEPTED = "ACCEPTED"            # 202 {accepted: true}
    ACKNOWLEDGED = "ACKNOWLEDGED"    # 200 {success, message, requestId}


@dataclass(frozen=True, slots=True)
class SettlementResult:
    """Resultado de uma estratégia de conclusão."""

    ledger_signature: str | None
    refunded: bool = False
    already_settled: bool = False


class FlowRecord(BaseModel):
    """Snapshot exposto pelo endpoint de status."""

    key: str = Field(..., min_length=1, description="Chave single-flight")
    direction: Direction
    state: FlowState = FlowState.ADMITTED
    request_id: Optional[str] = None
    evm_tx_hash: Optional[str] = None
    ledger_signatures: list[str] = Field(default_factory=list)
    refunded: bool = False
    error: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
