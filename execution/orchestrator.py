"""SignatureFlowOrchestrator — drives one deposit or withdrawal end to end.

State machine::

    ADMITTED → [PREPARING] → VALIDATING → AWAITING_SIGNATURE → SETTLING
             → COMPLETED | FAILED | TIMED_OUT

``PREPARING`` exists only for deposits (balance watch, EVM transfer
build and ``depositErc20``). Input validation and, for withdrawals, the
pending-account read run inline in :meth:`submit` so those errors reach
the caller; everything after that runs in a supervised task whose
outcome is visible through the :class:`FlowRegistry`.

Nothing here rolls back a ledger transaction. A flow that broadcast the
EVM leg and then failed or timed out on the custody side ends FAILED or
TIMED_OUT with the EVM hash recorded, for external reconciliation.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Union

import structlog
from eth_utils import to_checksum_address
from solders.pubkey import Pubkey

from core.errors import (
    BridgeError,
    NotFoundError,
    SignatureTimeoutError,
    ValidationError,
)
from execution.completion import (
    CompletionStrategy,
    DepositCompletion,
    MpcResponseVerifier,
    WithdrawalCompletion,
)
from execution.flow_registry import FlowRegistry
from execution.request_tracker import RequestTracker
from execution.signature_inbox import SignatureInbox
from models.bridge import Direction, EvmTransactionRequest, parse_evm_address, parse_pubkey
from models.chain import EventKind
from models.flow import FlowRecord, FlowState, ResponseMode
from models.requests import DepositNotification, WithdrawalNotification
from web3_infra.address_deriver import derive_evm_address
from web3_infra.evm_tx import encode_unsigned_transaction
from web3_infra.request_id import generate_request_id

logger = structlog.get_logger("execution.orchestrator")

Notification = Union[DepositNotification, WithdrawalNotification]


@dataclass
class OrchestratorConfig:
    """Timing and derivation parameters of the flows."""

    base_public_key: str
    mpc_root_signer: str
    vault_root_path: str = "root"
    withdrawal_signature_timeout_s: float = 60.0
    deposit_signature_timeout_s: float = 300.0
    signature_poll_interval_s: float = 2.0
    deposit_initial_delay_s: float = 12.0
    deposit_balance_poll_s: float = 5.0
    deposit_balance_timeout_s: float = 60.0
    deposit_amount_jitter_max: int = 100


@dataclass(frozen=True)
class SubmitOutcome:
    """What the entrypoint tells the caller; the flow itself runs on."""

    key: str
    direction: Direction
    response_mode: ResponseMode
    duplicate: bool = False
    request_id: str | None = None

    def http_response(self) -> tuple[int, dict[str, Any]]:
        """Status code and JSON body for the configured response mode."""
        if self.response_mode is ResponseMode.ACCEPTED:
            return 202, {"accepted": True}
        if self.duplicate:
            return 200, {"success": True, "message": "Already processing"}
        noun = "Withdrawal" if self.direction is Direction.WITHDRAWAL else "Deposit"
        return 200, {
            "success": True,
            "message": f"{noun} processing started",
            "requestId": self.request_id,
        }


@dataclass
class _Flow:
    key: str
    direction: Direction
    started: float = field(default_factory=time.monotonic)
    finished: bool = False


class SignatureFlowOrchestrator:
    """Composes tracker, ledger clients, inbox and completion strategies.

    Parameters
    ----------
    custody:
        :class:`solana_infra.custody_client.CustodyClient`.
    evm:
        :class:`web3_infra.evm_adapter.EvmAdapter`.
    inbox:
        Source of MPC response events.
    tracker:
        Single-flight guard.
    registry:
        Status read path.
    config:
        Timeouts and MPC parameters.
    metrics:
        Optional :class:`monitoring.metrics.MetricsRegistry`.
    watcher:
        Optional :class:`solana_infra.signature_watcher.SignatureEventWatcher`;
        nudged on every wait tick.
    """

    def __init__(
        self,
        custody: Any,
        evm: Any,
        inbox: SignatureInbox,
        tracker: RequestTracker,
        registry: FlowRegistry,
        config: OrchestratorConfig,
        metrics: Any | None = None,
        watcher: Any | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._custody = custody
        self._evm = evm
        self._inbox = inbox
        self._tracker = tracker
        self._registry = registry
        self._config = config
        self._metrics = metrics
        self._watcher = watcher
        self._rng = rng or random.SystemRandom()
        self._verifier = MpcResponseVerifier(custody, config.mpc_root_signer)
        self._tasks: dict[str, asyncio.Task[FlowRecord]] = {}
        self._vault_address: str | None = None

    # ── Addresses ────────────────────────────────────────────────

    @property
    def vault_evm_address(self) -> str:
        """EVM address of the global vault; sender of every withdrawal."""
        if self._vault_address is None:
            authority, _ = self._custody.pdas.global_vault_authority()
            self._vault_address = derive_evm_address(
                self._config.vault_root_path, str(authority), self._config.base_public_key
            )
        return self._vault_address

    def deposit_evm_address(self, user: Pubkey) -> str:
        """Per-user deposit address the MPC signs for."""
        authority, _ = self._custody.pdas.vault_authority(user)
        return derive_evm_address(str(user), str(authority), self._config.base_public_key)

    # ── Entrypoint ───────────────────────────────────────────────

    async def submit(
        self,
        notification: Notification,
        response_mode: ResponseMode = ResponseMode.ACCEPTED,
    ) -> SubmitOutcome:
        """Admit a notification and start its supervised flow.

        A key already in flight returns a duplicate outcome immediately.

        Raises
        ------
        ValidationError
            Inputs that can never settle (address or request-id mismatch).
        NotFoundError
            The pending withdrawal account does not exist.
        """
        if isinstance(notification, WithdrawalNotification):
            direction = Direction.WITHDRAWAL
            key = notification.request_id
        else:
            direction = Direction.DEPOSIT
            key = notification.single_flight_key

        if not self._tracker.admit(key):
            if self._metrics is not None:
                self._metrics.record_duplicate(direction.value)
            return SubmitOutcome(
                key=key,
                direction=direction,
                response_mode=response_mode,
                duplicate=True,
                request_id=key if direction is Direction.WITHDRAWAL else None,
            )

        flow = _Flow(key=key, direction=direction)
        request_id = key if direction is Direction.WITHDRAWAL else None
        self._registry.open(key, direction, request_id=request_id)
        if self._metrics is not None:
            self._metrics.record_admitted(direction.value)

        try:
            if direction is Direction.WITHDRAWAL:
                coro = await self._admit_withdrawal(flow, notification)
            else:
                coro = self._admit_deposit(flow, notification)
        except BaseException as exc:
            self._finish(flow, FlowState.FAILED, error=str(exc))
            raise

        self._spawn(flow, coro)
        return SubmitOutcome(
            key=key,
            direction=direction,
            response_mode=response_mode,
            request_id=request_id,
        )

    def status(self, key_or_request_id: str) -> FlowRecord | None:
        return self._registry.get(key_or_request_id)

    async def wait_for(self, key: str) -> FlowRecord | None:
        """Await the supervised task for *key*, if one is running."""
        task = self._tasks.get(key)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._registry.get(key)

    @property
    def inflight(self) -> int:
        return len(self._tracker)

    async def shutdown(self) -> None:
        """Cancel running flows; they end FAILED with the EVM hash recorded."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("orchestrator.flows_cancelled", count=len(tasks))

    # ── Withdrawal ───────────────────────────────────────────────

    async def _admit_withdrawal(self, flow: _Flow, note: WithdrawalNotification):
        self._registry.transition(flow.key, FlowState.VALIDATING)
        request_id = note.request_id_bytes
        tx = note.transaction_params

        pending = await self._custody.fetch_pending_withdrawal(request_id)

        erc20 = parse_evm_address(note.erc20_address, "erc20Address")
        if pending.erc20_address != erc20:
            raise ValidationError(
                f"erc20Address {note.erc20_address} does not match pending withdrawal "
                f"token {to_checksum_address(pending.erc20_address)}"
            )
        if tx.to_bytes != erc20:
            raise ValidationError("transactionParams.to must be the ERC20 contract")

        authority, _ = self._custody.pdas.global_vault_authority()
        expected_id = generate_request_id(
            str(authority), encode_unsigned_transaction(tx), self._config.vault_root_path
        )
        if expected_id != request_id:
            raise ValidationError(
                f"transactionParams hash to 0x{expected_id.hex()}, not {note.request_id}"
            )

        strategy = WithdrawalCompletion(
            self._custody, self._verifier, parse_pubkey(pending.requester, "requester"), erc20
        )
        return self._settle(
            flow,
            request_id,
            tx,
            expected_sender=self.vault_evm_address,
            strategy=strategy,
            timeout_s=self._config.withdrawal_signature_timeout_s,
        )

    # ── Deposit ──────────────────────────────────────────────────

    def _admit_deposit(self, flow: _Flow, note: DepositNotification):
        user = parse_pubkey(note.user_address, "userAddress")
        deposit_address = self.deposit_evm_address(user)
        if deposit_address.lower() != note.ethereum_address.lower():
            raise ValidationError(
                f"ethereumAddress {note.ethereum_address} is not the deposit address "
                f"{deposit_address} of {note.user_address}"
            )
        return self._run_deposit(flow, note, user, deposit_address)

    async def _run_deposit(
        self,
        flow: _Flow,
        note: DepositNotification,
        user: Pubkey,
        deposit_address: str,
    ) -> None:
        cfg = self._config
        self._registry.transition(flow.key, FlowState.PREPARING)
        await asyncio.sleep(cfg.deposit_initial_delay_s)

        balance = await self._await_balance(note.erc20_address, deposit_address)
        jitter = self._rng.randint(1, cfg.deposit_amount_jitter_max) if cfg.deposit_amount_jitter_max else 0
        amount = balance - jitter if balance > jitter else balance

        tx = await self._evm.build_erc20_transfer(
            sender=deposit_address,
            token=note.erc20_address,
            recipient=self.vault_evm_address,
            amount=amount,
        )
        requester_pda, _ = self._custody.pdas.vault_authority(user)
        request_id = generate_request_id(
            str(requester_pda), encode_unsigned_transaction(tx), str(user)
        )
        erc20 = parse_evm_address(note.erc20_address, "erc20Address")
        self._registry.annotate(flow.key, request_id="0x" + request_id.hex())

        ledger_sig = await self._custody.deposit_erc20(
            request_id, user, erc20, amount, tx.to_ledger_params()
        )
        self._append_ledger_signature(flow.key, ledger_sig)
        logger.info(
            "orchestrator.deposit_requested",
            key=flow.key,
            request_id="0x" + request_id.hex(),
            amount=amount,
            signature=ledger_sig,
        )

        self._registry.transition(flow.key, FlowState.VALIDATING)
        pending = await self._custody.fetch_pending_deposit(request_id)

        strategy = DepositCompletion(
            self._custody,
            self._verifier,
            parse_pubkey(pending.requester, "requester"),
            pending.erc20_address,
        )
        await self._settle(
            flow,
            request_id,
            tx,
            expected_sender=deposit_address,
            strategy=strategy,
            timeout_s=cfg.deposit_signature_timeout_s,
        )

    async def _await_balance(self, token: str, owner: str) -> int:
        cfg = self._config
        deadline = time.monotonic() + cfg.deposit_balance_timeout_s
        while True:
            try:
                balance = await self._evm.get_erc20_balance(token, owner)
            except BridgeError as exc:
                logger.warning("orchestrator.balance_poll_failed", owner=owner, error=str(exc))
                balance = 0
            if balance > 0:
                return balance
            if time.monotonic() >= deadline:
                raise NotFoundError(f"No token balance detected at {owner}", address=owner)
            await asyncio.sleep(cfg.deposit_balance_poll_s)

    # ── Shared signature flow ────────────────────────────────────

    async def _settle(
        self,
        flow: _Flow,
        request_id: bytes,
        tx: EvmTransactionRequest,
        expected_sender: str,
        strategy: CompletionStrategy,
        timeout_s: float,
    ) -> None:
        self._registry.transition(flow.key, FlowState.AWAITING_SIGNATURE)
        signature_event = await self._wait_event(request_id, EventKind.SIGNATURE, timeout_s)

        self._registry.transition(flow.key, FlowState.SETTLING)
        try:
            receipt = await self._evm.broadcast_signed(
                tx, signature_event.signature, expected_sender=expected_sender
            )
        except BridgeError:
            if self._metrics is not None:
                self._metrics.record_evm_broadcast(False)
            raise
        if self._metrics is not None:
            self._metrics.record_evm_broadcast(True)
        self._registry.annotate(flow.key, evm_tx_hash=receipt.tx_hash)

        read_event = await self._wait_event(request_id, EventKind.READ_RESPONSE, timeout_s)
        result = await strategy.complete(read_event)

        if result.ledger_signature is not None:
            self._append_ledger_signature(flow.key, result.ledger_signature)
        self._finish(flow, FlowState.COMPLETED, refunded=result.refunded)

    async def _wait_event(self, request_id: bytes, kind: EventKind, timeout_s: float):
        on_tick = self._watcher.request_scan if self._watcher is not None else None
        return await self._inbox.wait_for(
            request_id,
            kind,
            timeout_s=timeout_s,
            poll_interval_s=self._config.signature_poll_interval_s,
            on_tick=on_tick,
        )

    # ── Supervision ──────────────────────────────────────────────

    def _spawn(self, flow: _Flow, coro) -> None:
        task = asyncio.create_task(self._supervise(flow, coro), name=f"flow:{flow.key}")
        self._tasks[flow.key] = task

        def _done(t: asyncio.Task) -> None:
            if self._tasks.get(flow.key) is t:
                del self._tasks[flow.key]
            # cancelled before the first step: the coroutine never ran
            if not flow.finished:
                coro.close()
                self._finish(flow, FlowState.FAILED, error="cancelled")

        task.add_done_callback(_done)

    async def _supervise(self, flow: _Flow, coro) -> FlowRecord:
        try:
            await coro
        except SignatureTimeoutError as exc:
            logger.warning("orchestrator.flow_timed_out", key=flow.key, error=str(exc))
            self._finish(flow, FlowState.TIMED_OUT, error=str(exc))
        except BridgeError as exc:
            logger.error(
                "orchestrator.flow_failed",
                key=flow.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._finish(flow, FlowState.FAILED, error=str(exc))
        except asyncio.CancelledError:
            self._finish(flow, FlowState.FAILED, error="cancelled")
            raise
        except Exception as exc:
            logger.exception("orchestrator.flow_crashed", key=flow.key)
            self._finish(flow, FlowState.FAILED, error=f"{type(exc).__name__}: {exc}")
        finally:
            if not flow.finished:
                self._finish(flow, FlowState.FAILED, error="flow ended without a terminal state")
        return self._registry.get(flow.key)

    def _finish(self, flow: _Flow, state: FlowState, **changes: Any) -> None:
        if flow.finished:
            return
        flow.finished = True
        try:
            self._registry.transition(flow.key, state, **changes)
        finally:
            self._tracker.release(flow.key)
            if self._metrics is not None:
                self._metrics.record_terminal(
                    flow.direction.value, state.value, time.monotonic() - flow.started
                )

    def _append_ledger_signature(self, key: str, signature: str) -> None:
        record = self._registry.get(key)
        signatures = list(record.ledger_signatures) if record is not None else []
        signatures.append(signature)
        self._registry.annotate(key, ledger_signatures=signatures)
