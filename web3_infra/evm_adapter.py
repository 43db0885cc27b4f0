"""EvmAdapter — nonce, fees, ERC20 reads and broadcast of MPC-signed transactions.

Reads go through ``RPCManager.execute`` wrapped in a :class:`RetryPolicy`.
Broadcasts are never retried: a second ``send_raw_transaction`` of the
same payload is at best a no-op, so the adapter instead treats the
node's "already known" answer as success.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address, to_hex
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from core.errors import ChainSubmissionError, RpcError, ValidationError, is_retryable
from core.retry import RetryPolicy
from models.bridge import EvmTransactionRequest
from models.chain import MpcSignature
from web3_infra.evm_tx import (
    encode_balance_of,
    encode_erc20_transfer,
    encode_signed_transaction,
    recover_signer,
    signing_hash,
)

logger = structlog.get_logger("web3_infra.evm_adapter")

GWEI = 10**9

_ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "alreadyknown")


class TxStatus(str, Enum):
    """Outcome of a broadcast."""

    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"


@dataclass(frozen=True)
class EvmTxResult:
    """Mined transaction summary."""

    tx_hash: str
    status: TxStatus
    gas_used: int
    block_number: int


@dataclass
class EvmAdapterConfig:
    """EVM-side parameters."""

    chain_id: int = 11155111
    gas_buffer_pct: int = 20
    fallback_priority_fee_wei: int = 2 * GWEI
    fallback_max_fee_wei: int = 20 * GWEI
    receipt_timeout_s: float = 120.0
    receipt_poll_interval_s: float = 2.0


class EvmAdapter:
    """Thin EVM client used by the deposit and withdrawal flows.

    Parameters
    ----------
    rpc_manager:
        Started :class:`web3_infra.rpc_manager.RPCManager`.
    config:
        Chain id, gas buffer and fee fallbacks.
    retry_policy:
        Wraps individual reads; defaults to 3 attempts with quadratic
        backoff and the shared ``is_retryable`` predicate.
    """

    def __init__(
        self,
        rpc_manager: Any,  # RPCManager
        config: EvmAdapterConfig | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._rpc = rpc_manager
        self._config = config or EvmAdapterConfig()
        self._retry = retry_policy or RetryPolicy(should_retry=is_retryable)

    @property
    def config(self) -> EvmAdapterConfig:
        return self._config

    # ── Reads ────────────────────────────────────────────────────

    async def get_nonce(self, address: str) -> int:
        account = to_checksum_address(address)
        return await self._read(
            lambda w3: w3.eth.get_transaction_count(account, "pending"),
            "get_nonce",
        )

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        """Node estimate plus the configured safety buffer (20% by default)."""
        estimate = await self._read(lambda w3: w3.eth.estimate_gas(tx), "estimate_gas")
        return int(estimate) * (100 + self._config.gas_buffer_pct) // 100

    async def get_fee_data(self) -> tuple[int, int]:
        """Return ``(max_priority_fee_per_gas, max_fee_per_gas)`` in wei.

        Missing node fields fall back to the configured defaults; the max
        fee is ``2 * baseFee + priority`` when a base fee is known.
        """

        async def _fees(w3: AsyncWeb3) -> tuple[int | None, int | None]:
            block = await w3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas")
            try:
                priority = await w3.eth.max_priority_fee
            except Exception as exc:
                logger.debug("evm_adapter.priority_fee_unavailable", error=str(exc))
                priority = None
            return priority, base_fee

        priority, base_fee = await self._read(_fees, "get_fee_data")

        priority_fee = int(priority) if priority else self._config.fallback_priority_fee_wei
        if base_fee is None:
            max_fee = self._config.fallback_max_fee_wei
        else:
            max_fee = int(base_fee) * 2 + priority_fee
        return priority_fee, max(max_fee, priority_fee)

    async def get_erc20_balance(self, token: str, owner: str) -> int:
        call = {"to": to_checksum_address(token), "data": to_hex(encode_balance_of(owner))}
        raw = await self._read(lambda w3: w3.eth.call(call), "erc20_balance_of")
        try:
            (balance,) = abi_decode(["uint256"], bytes(raw))
        except DecodingError as exc:
            # empty return data: token not deployed yet or a lagging node
            raise RpcError(f"balanceOf({owner}) returned undecodable data", last_error=exc) from exc
        return int(balance)

    # ── Transaction building ─────────────────────────────────────

    async def build_erc20_transfer(
        self,
        sender: str,
        token: str,
        recipient: str,
        amount: int,
    ) -> EvmTransactionRequest:
        """Unsigned type-2 ERC20 ``transfer`` from *sender*."""
        data = encode_erc20_transfer(recipient, amount)
        nonce = await self.get_nonce(sender)
        gas_limit = await self.estimate_gas(
            {
                "from": to_checksum_address(sender),
                "to": to_checksum_address(token),
                "data": to_hex(data),
                "value": 0,
            }
        )
        priority_fee, max_fee = await self.get_fee_data()

        tx = EvmTransactionRequest(
            chain_id=self._config.chain_id,
            nonce=nonce,
            max_priority_fee_per_gas=priority_fee,
            max_fee_per_gas=max_fee,
            gas_limit=gas_limit,
            to=token,
            value=0,
            data=to_hex(data),
        )
        logger.info(
            "evm_adapter.transfer_built",
            sender=sender,
            token=tx.to,
            recipient=recipient,
            amount=amount,
            nonce=nonce,
            gas_limit=gas_limit,
        )
        return tx

    # ── Broadcast ────────────────────────────────────────────────

    async def broadcast_signed(
        self,
        tx: EvmTransactionRequest,
        signature: MpcSignature,
        expected_sender: str | None = None,
    ) -> EvmTxResult:
        """Attach *signature*, broadcast and wait for a successful receipt.

        Raises
        ------
        ValidationError
            If the signature does not recover to *expected_sender*.
        ChainSubmissionError
            On rejected broadcast, revert, or receipt timeout.
        """
        if expected_sender is not None:
            signer = recover_signer(signing_hash(tx), signature)
            if signer.lower() != expected_sender.lower():
                raise ValidationError(
                    f"signature recovers to {signer}, expected {expected_sender}"
                )

        raw = encode_signed_transaction(tx, signature)
        tx_hash = to_hex(keccak(raw))

        try:
            await self._rpc.execute(lambda w3: w3.eth.send_raw_transaction(raw))
        except RpcError as exc:
            cause = str(exc.last_error or exc).lower()
            if not any(marker in cause for marker in _ALREADY_KNOWN_MARKERS):
                raise ChainSubmissionError(
                    f"EVM broadcast rejected: {exc.last_error or exc}",
                    chain="evm",
                    tx_hash=tx_hash,
                ) from exc
            logger.info("evm_adapter.tx_already_known", tx_hash=tx_hash)

        logger.info("evm_adapter.tx_sent", tx_hash=tx_hash, nonce=tx.nonce)
        return await self.wait_for_receipt(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> EvmTxResult:
        """Poll for the receipt until mined or the configured timeout."""

        async def _receipt(w3: AsyncWeb3) -> Any:
            try:
                return await w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        deadline = time.monotonic() + self._config.receipt_timeout_s
        while True:
            receipt = await self._read(_receipt, "get_transaction_receipt")
            if receipt is not None:
                break
            if time.monotonic() >= deadline:
                logger.error("evm_adapter.receipt_timeout", tx_hash=tx_hash)
                raise ChainSubmissionError(
                    f"No receipt for {tx_hash} after {self._config.receipt_timeout_s}s",
                    chain="evm",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(self._config.receipt_poll_interval_s)

        result = EvmTxResult(
            tx_hash=tx_hash,
            status=TxStatus.CONFIRMED if receipt.get("status", 0) == 1 else TxStatus.REVERTED,
            gas_used=int(receipt.get("gasUsed", 0)),
            block_number=int(receipt.get("blockNumber", 0)),
        )
        if result.status == TxStatus.REVERTED:
            logger.error("evm_adapter.tx_reverted", tx_hash=tx_hash, block=result.block_number)
            raise ChainSubmissionError(
                "EVM transaction reverted on-chain",
                chain="evm",
                tx_hash=tx_hash,
            )

        logger.info(
            "evm_adapter.tx_confirmed",
            tx_hash=tx_hash,
            gas_used=result.gas_used,
            block=result.block_number,
        )
        return result

    # ── Internals ────────────────────────────────────────────────

    async def _read(self, fn: Any, name: str) -> Any:
        return await self._retry.run(lambda: self._rpc.execute(fn), name=name)
