"""CustodyClient — account reads and instruction submission for the custody program.

Reads are wrapped in :class:`RetryPolicy`; a missing account surfaces as
:class:`NotFoundError` and is never retried. Submissions are sent once:
a failed send or confirmation becomes :class:`ChainSubmissionError` and
the flow decides what to do with it.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable

import structlog
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from core.errors import ChainSubmissionError, NotFoundError, ValidationError, is_retryable
from core.retry import RetryPolicy
from models.bridge import EvmTransactionParams, parse_evm_address
from models.chain import (
    MpcSignature,
    PendingDeposit,
    PendingWithdrawal,
    UserBalance,
    VaultConfig,
)
from solana_infra.accounts import (
    decode_pending_deposit,
    decode_pending_withdrawal,
    decode_user_balance,
    decode_vault_config,
)
from solana_infra.instructions import CustodyInstructions
from solana_infra.pda import BridgePdas

logger = structlog.get_logger("solana_infra.custody_client")

# 64-byte secret in base58; from_base58_string aborts on anything else
_BASE58_SECRET = re.compile(r"[1-9A-HJ-NP-Za-km-z]{86,88}")


def load_keypair(secret: str) -> Keypair:
    """Parse a relayer secret given as base58 or as a JSON byte array.

    Raises
    ------
    ValidationError
        If *secret* is empty or neither format decodes to a keypair.
    """
    text = secret.strip()
    if not text:
        raise ValidationError("relayer private key is not configured")
    try:
        if text.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(text)))
        if not _BASE58_SECRET.fullmatch(text):
            raise ValueError("not a base58 keypair")
        return Keypair.from_base58_string(text)
    except (ValueError, TypeError) as exc:
        raise ValidationError("relayer private key is malformed") from exc


class CustodyClient:
    """Thin async adapter over ``solana.rpc.async_api.AsyncClient``.

    Parameters
    ----------
    client:
        Connected ``AsyncClient``.
    keypair:
        Relayer keypair; pays fees and signs every submission.
    pdas:
        PDA derivations for the configured program ids.
    retry_policy:
        Wraps reads only.
    commitment:
        Commitment used for reads and confirmation.
    on_submission:
        Optional ``(instruction_name, ok)`` hook for metrics.
    """

    def __init__(
        self,
        client: Any,  # solana.rpc.async_api.AsyncClient
        keypair: Keypair,
        pdas: BridgePdas,
        retry_policy: RetryPolicy | None = None,
        commitment: Commitment = Confirmed,
        on_submission: Callable[[str, bool], None] | None = None,
    ) -> None:
        self._client = client
        self._keypair = keypair
        self._pdas = pdas
        self._retry = retry_policy or RetryPolicy(should_retry=is_retryable)
        self._commitment = commitment
        self._instructions = CustodyInstructions(pdas, keypair.pubkey())
        self._on_submission = on_submission

    @property
    def pdas(self) -> BridgePdas:
        return self._pdas

    @property
    def payer(self) -> Pubkey:
        return self._keypair.pubkey()

    # ── Reads ────────────────────────────────────────────────────

    async def fetch_account_data(self, address: Pubkey, label: str) -> bytes:
        """Raw account data, or NotFoundError when the account is absent."""

        async def _load() -> bytes:
            resp = await self._client.get_account_info(address, commitment=self._commitment)
            if resp.value is None:
                raise NotFoundError(f"{label} account not found", address=str(address))
            return bytes(resp.value.data)

        return await self._retry.run(_load, name=f"get_account_info:{label}")

    async def fetch_pending_deposit(self, request_id: bytes) -> PendingDeposit:
        address, _ = self._pdas.pending_deposit(request_id)
        return decode_pending_deposit(await self.fetch_account_data(address, "pending deposit"))

    async def fetch_pending_withdrawal(self, request_id: bytes) -> PendingWithdrawal:
        address, _ = self._pdas.pending_withdrawal(request_id)
        return decode_pending_withdrawal(
            await self.fetch_account_data(address, "pending withdrawal")
        )

    async def fetch_user_balance(self, user: Pubkey, erc20_address: bytes) -> UserBalance:
        address, _ = self._pdas.user_balance(user, erc20_address)
        return decode_user_balance(await self.fetch_account_data(address, "user balance"))

    async def fetch_vault_config(self) -> VaultConfig:
        address, _ = self._pdas.vault_config()
        return decode_vault_config(await self.fetch_account_data(address, "vault config"))

    # ── Admin ────────────────────────────────────────────────────

    async def initialize_config(self, mpc_root_signer: str | bytes) -> str:
        signer = parse_evm_address(mpc_root_signer, "mpcRootSigner")
        return await self.submit([self._instructions.initialize_config(signer)], "initialize_config")

    async def update_config(self, mpc_root_signer: str | bytes) -> str:
        signer = parse_evm_address(mpc_root_signer, "mpcRootSigner")
        return await self.submit([self._instructions.update_config(signer)], "update_config")

    # ── Bridge instructions ──────────────────────────────────────

    async def deposit_erc20(
        self,
        request_id: bytes,
        requester: Pubkey,
        erc20_address: bytes,
        amount: int,
        tx_params: EvmTransactionParams,
    ) -> str:
        ix = self._instructions.deposit_erc20(
            request_id, requester, erc20_address, amount, tx_params
        )
        return await self.submit([ix], "deposit_erc20")

    async def claim_erc20(
        self,
        request_id: bytes,
        serialized_output: bytes,
        signature: MpcSignature,
        requester: Pubkey,
        erc20_address: bytes,
    ) -> str:
        ix = self._instructions.claim_erc20(
            request_id, serialized_output, signature, requester, erc20_address
        )
        return await self.submit([ix], "claim_erc20")

    async def complete_withdraw_erc20(
        self,
        request_id: bytes,
        serialized_output: bytes,
        signature: MpcSignature,
        requester: Pubkey,
        erc20_address: bytes,
    ) -> str:
        ix = self._instructions.complete_withdraw_erc20(
            request_id, serialized_output, signature, requester, erc20_address
        )
        return await self.submit([ix], "complete_withdraw_erc20")

    # ── Submission ───────────────────────────────────────────────

    async def submit(self, instructions: list[Instruction], name: str) -> str:
        """Sign, send and confirm one transaction; returns its signature.

        Raises
        ------
        ChainSubmissionError
            If the node rejects the transaction or it fails to confirm.
        """
        blockhash_resp = await self._retry.run(
            lambda: self._client.get_latest_blockhash(self._commitment),
            name="get_latest_blockhash",
        )
        blockhash = blockhash_resp.value.blockhash
        last_valid = blockhash_resp.value.last_valid_block_height

        message = MessageV0.try_compile(self.payer, instructions, [], blockhash)
        tx = VersionedTransaction(message, [self._keypair])
        tx_signature = str(tx.signatures[0])

        try:
            sent = await self._client.send_raw_transaction(
                bytes(tx),
                opts=TxOpts(skip_preflight=False, preflight_commitment=self._commitment),
            )
            confirmation = await self._client.confirm_transaction(
                sent.value,
                self._commitment,
                last_valid_block_height=last_valid,
            )
        except Exception as exc:
            self._record(name, False)
            logger.error(
                "custody_client.submission_failed",
                instruction=name,
                signature=tx_signature,
                error=str(exc),
            )
            raise ChainSubmissionError(
                f"{name} failed: {exc}", chain="solana", tx_hash=tx_signature
            ) from exc

        statuses = getattr(confirmation, "value", None) or []
        err = statuses[0].err if statuses and statuses[0] is not None else None
        if err is not None:
            self._record(name, False)
            logger.error(
                "custody_client.instruction_failed",
                instruction=name,
                signature=tx_signature,
                error=str(err),
            )
            raise ChainSubmissionError(
                f"{name} failed on-chain: {err}", chain="solana", tx_hash=tx_signature
            )

        self._record(name, True)
        logger.info("custody_client.instruction_sent", instruction=name, signature=tx_signature)
        return tx_signature

    def _record(self, name: str, ok: bool) -> None:
        if self._on_submission is not None:
            self._on_submission(name, ok)
