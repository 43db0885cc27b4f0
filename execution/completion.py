"""Completion strategies — the custody-side settlement step of each direction.

Both strategies share ``complete(event) -> SettlementResult`` and are
handed the READ_RESPONSE event that attests the EVM transfer outcome.
Before anything is submitted the response signature is checked against
the trusted MPC root signer, which is exactly what the custody program
re-checks on-chain.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog
from eth_utils import keccak
from solders.pubkey import Pubkey

from core.errors import ChainSubmissionError, NotFoundError, ValidationError
from models.bridge import Direction
from models.chain import EventKind, SignatureEvent
from models.flow import SettlementResult
from web3_infra.evm_tx import recover_signer

logger = structlog.get_logger("execution.completion")

ERROR_RESPONSE_PREFIX = bytes.fromhex("deadbeef")


# ── Output decoding ─────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class TransferOutput:
    """Decoded ``serialized_output`` of a READ_RESPONSE."""

    success: bool
    error_response: bool = False


def decode_transfer_output(output: bytes) -> TransferOutput:
    """Interpret the attested ERC20 ``transfer`` result.

    A ``DEADBEEF`` prefix marks an error response from the MPC network;
    anything else must be a single borsh bool.

    Raises
    ------
    ValidationError
        If the output is neither.
    """
    if len(output) >= 4 and output[:4] == ERROR_RESPONSE_PREFIX:
        return TransferOutput(success=False, error_response=True)
    if len(output) != 1 or output[0] not in (0, 1):
        raise ValidationError(f"serialized output is not a borsh bool: 0x{output.hex()}")
    return TransferOutput(success=output[0] == 1)


def response_message_hash(request_id: bytes, serialized_output: bytes) -> bytes:
    return keccak(request_id + serialized_output)


# ── Verification ────────────────────────────────────────────────────


class MpcResponseVerifier:
    """Checks READ_RESPONSE signatures against the trusted root signer.

    The signer comes from the on-chain ``VaultConfig`` when it exists;
    otherwise *fallback_signer* is used.
    """

    def __init__(self, custody, fallback_signer: str) -> None:
        self._custody = custody
        self._fallback_signer = fallback_signer

    async def trusted_signer(self) -> str:
        try:
            config = await self._custody.fetch_vault_config()
        except NotFoundError:
            return self._fallback_signer
        return config.signer_checksum

    async def verify(self, event: SignatureEvent) -> str:
        """Return the recovered signer; raise ValidationError on mismatch."""
        if event.kind is not EventKind.READ_RESPONSE:
            raise ValidationError(f"expected READ_RESPONSE, got {event.kind.value}")
        if event.signature.recovery_id >= 4:
            raise ValidationError(f"invalid recovery id {event.signature.recovery_id}")

        expected = await self.trusted_signer()
        digest = response_message_hash(event.request_id, event.serialized_output)
        recovered = recover_signer(digest, event.signature)
        if recovered.lower() != expected.lower():
            logger.error(
                "completion.untrusted_response",
                request_id=event.request_id_hex,
                recovered=recovered,
                expected=expected,
            )
            raise ValidationError(
                f"response for {event.request_id_hex} signed by {recovered}, expected {expected}"
            )
        return recovered


# ── Strategies ──────────────────────────────────────────────────────


class CompletionStrategy(ABC):
    """Submits the settling custody instruction for one flow."""

    direction: Direction

    def __init__(
        self,
        custody,
        verifier: MpcResponseVerifier,
        requester: Pubkey,
        erc20_address: bytes,
    ) -> None:
        self._custody = custody
        self._verifier = verifier
        self.requester = requester
        self.erc20_address = erc20_address

    @abstractmethod
    async def complete(self, event: SignatureEvent) -> SettlementResult:
        """Settle the request described by *event*."""


class DepositCompletion(CompletionStrategy):
    """``claimErc20``: credit the pending deposit to the user's balance."""

    direction = Direction.DEPOSIT

    async def complete(self, event: SignatureEvent) -> SettlementResult:
        await self._verifier.verify(event)
        outcome = decode_transfer_output(event.serialized_output)
        if not outcome.success:
            raise ChainSubmissionError(
                f"EVM transfer for deposit {event.request_id_hex} failed; nothing to claim",
                chain="evm",
            )

        try:
            await self._custody.fetch_pending_deposit(event.request_id)
        except NotFoundError:
            logger.info("completion.deposit_already_claimed", request_id=event.request_id_hex)
            return SettlementResult(ledger_signature=None, already_settled=True)

        signature = await self._custody.claim_erc20(
            event.request_id,
            event.serialized_output,
            event.signature,
            self.requester,
            self.erc20_address,
        )
        logger.info(
            "completion.deposit_claimed",
            request_id=event.request_id_hex,
            signature=signature,
        )
        return SettlementResult(ledger_signature=signature)


class WithdrawalCompletion(CompletionStrategy):
    """``completeWithdrawErc20``: close the withdrawal, refunding on failure."""

    direction = Direction.WITHDRAWAL

    async def complete(self, event: SignatureEvent) -> SettlementResult:
        await self._verifier.verify(event)
        outcome = decode_transfer_output(event.serialized_output)
        refunded = not outcome.success

        signature = await self._custody.complete_withdraw_erc20(
            event.request_id,
            event.serialized_output,
            event.signature,
            self.requester,
            self.erc20_address,
        )
        logger.info(
            "completion.withdrawal_completed",
            request_id=event.request_id_hex,
            signature=signature,
            refunded=refunded,
            error_response=outcome.error_response,
        )
        return SettlementResult(ledger_signature=signature, refunded=refunded)
