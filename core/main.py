"""Entrypoint — uvloop event loop, relayer wiring, graceful shutdown."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import NoReturn

import uvloop
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey

from api.server import RelayerServer
from config.settings import Settings, settings
from core.errors import is_retryable
from core.event_bus import EventBus
from core.logger import get_logger
from core.retry import RetryPolicy, quadratic_backoff
from execution.flow_registry import FlowRegistry
from execution.orchestrator import OrchestratorConfig, SignatureFlowOrchestrator
from execution.request_tracker import RequestTracker
from execution.signature_inbox import SignatureInbox
from monitoring.metrics import MetricsRegistry
from solana_infra.custody_client import CustodyClient, load_keypair
from solana_infra.pda import BridgePdas
from solana_infra.result_cache import CachedLedgerReader, ResultCache
from solana_infra.signature_watcher import SignatureEventWatcher
from web3_infra.evm_adapter import GWEI, EvmAdapter, EvmAdapterConfig
from web3_infra.rpc_manager import RPCManager, redact_url

log = get_logger(__name__)


class GracefulShutdown:
    """Tracks shutdown signal and provides a flag for the main loop."""

    def __init__(self) -> None:
        self._should_stop = asyncio.Event()

    @property
    def should_stop(self) -> bool:
        return self._should_stop.is_set()

    @property
    def event(self) -> asyncio.Event:
        return self._should_stop

    def trigger(self) -> None:
        self._should_stop.set()

    async def wait(self) -> None:
        await self._should_stop.wait()


def build_retry_policy(cfg: Settings, metrics: MetricsRegistry | None = None) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=cfg.RETRY_MAX_ATTEMPTS,
        backoff=quadratic_backoff(cfg.RETRY_BACKOFF_BASE_MS),
        should_retry=is_retryable,
        on_retry=metrics.record_retry if metrics is not None else None,
    )


def build_orchestrator_config(cfg: Settings) -> OrchestratorConfig:
    return OrchestratorConfig(
        base_public_key=cfg.MPC_BASE_PUBLIC_KEY,
        mpc_root_signer=cfg.MPC_ROOT_SIGNER_ADDRESS,
        vault_root_path=cfg.VAULT_ROOT_PATH,
        withdrawal_signature_timeout_s=cfg.WITHDRAWAL_SIGNATURE_TIMEOUT_SECONDS,
        deposit_signature_timeout_s=cfg.DEPOSIT_SIGNATURE_TIMEOUT_SECONDS,
        signature_poll_interval_s=cfg.SIGNATURE_POLL_INTERVAL_SECONDS,
        deposit_initial_delay_s=cfg.DEPOSIT_INITIAL_DELAY_SECONDS,
        deposit_balance_poll_s=cfg.DEPOSIT_BALANCE_POLL_SECONDS,
        deposit_balance_timeout_s=cfg.DEPOSIT_BALANCE_TIMEOUT_SECONDS,
        deposit_amount_jitter_max=cfg.DEPOSIT_AMOUNT_JITTER_MAX,
    )


async def main() -> None:
    """Wire the relayer and serve until SIGINT/SIGTERM."""
    log.info(
        "starting",
        app=settings.APP_NAME,
        env=settings.APP_ENV,
        evm_rpc=[redact_url(u) for u in settings.evm_rpc_urls],
        solana_rpc=redact_url(settings.SOLANA_RPC_URL),
    )

    shutdown = GracefulShutdown()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: _handle_signal(s, shutdown))

    metrics = MetricsRegistry()
    metrics.app_info.info({"app": settings.APP_NAME, "env": settings.APP_ENV})
    retry_policy = build_retry_policy(settings, metrics)
    commitment = Commitment(settings.SOLANA_COMMITMENT)
    bus = EventBus()

    pdas = BridgePdas(
        Pubkey.from_string(settings.BRIDGE_PROGRAM_ID),
        Pubkey.from_string(settings.CHAIN_SIGNATURES_PROGRAM_ID),
    )
    keypair = load_keypair(settings.RELAYER_PRIVATE_KEY)

    rpc = RPCManager(settings.evm_rpc_urls)
    solana = AsyncClient(settings.SOLANA_RPC_URL, commitment=commitment)
    try:
        await rpc.start()

        evm = EvmAdapter(
            rpc,
            EvmAdapterConfig(
                chain_id=settings.EVM_CHAIN_ID,
                gas_buffer_pct=settings.EVM_GAS_BUFFER_PCT,
                fallback_priority_fee_wei=settings.EVM_FALLBACK_PRIORITY_FEE_GWEI * GWEI,
                fallback_max_fee_wei=settings.EVM_FALLBACK_MAX_FEE_GWEI * GWEI,
                receipt_timeout_s=settings.EVM_RECEIPT_TIMEOUT_SECONDS,
            ),
            retry_policy,
        )
        custody = CustodyClient(
            solana,
            keypair,
            pdas,
            retry_policy=retry_policy,
            commitment=commitment,
            on_submission=metrics.record_ledger_submission,
        )
        reader = CachedLedgerReader(
            solana,
            ResultCache(on_lookup=metrics.record_cache_lookup),
            transaction_ttl_s=settings.CACHE_TRANSACTION_TTL_SECONDS,
            signatures_ttl_s=settings.CACHE_SIGNATURES_TTL_SECONDS,
            commitment=commitment,
            retry_policy=retry_policy,
        )
        watcher = SignatureEventWatcher(
            reader,
            bus,
            pdas.chain_signatures_program,
            responder=settings.MPC_RESPONDER_ADDRESS or None,
            scan_limit=settings.EVENT_SCAN_LIMIT,
            interval_s=settings.EVENT_SCAN_INTERVAL_SECONDS,
        )
        inbox = SignatureInbox(ttl_s=settings.EVENT_INBOX_TTL_SECONDS)
        orchestrator = SignatureFlowOrchestrator(
            custody,
            evm,
            inbox,
            RequestTracker(),
            FlowRegistry(bus),
            build_orchestrator_config(settings),
            metrics=metrics,
            watcher=watcher,
        )
        server = RelayerServer(
            orchestrator,
            metrics,
            host=settings.API_HOST,
            port=settings.API_PORT,
            max_body_bytes=settings.API_MAX_BODY_BYTES,
            rpc_manager=rpc,
        )

        inbox_ready = asyncio.Event()
        background = [
            asyncio.create_task(inbox.consume(bus, inbox_ready), name="signature_inbox"),
        ]
        await inbox_ready.wait()
        background.append(asyncio.create_task(watcher.run(shutdown.event), name="signature_watcher"))

        await server.start_server()
        log.info(
            "relayer_ready",
            payer=str(custody.payer),
            vault_evm_address=orchestrator.vault_evm_address,
        )

        await shutdown.wait()

        await server.stop_server()
        await orchestrator.shutdown()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
    except Exception:
        log.exception("fatal_error")
        sys.exit(1)
    finally:
        await solana.close()
        await rpc.stop()

    log.info("shutdown_complete")


def _handle_signal(sig: signal.Signals, shutdown: GracefulShutdown) -> None:
    """Signal handler — sets the shutdown flag."""
    log.info("signal_received", signal=sig.name)
    shutdown.trigger()


def run() -> NoReturn:
    """CLI entry: install uvloop policy and run."""
    uvloop.install()
    asyncio.run(main())
    sys.exit(0)


if __name__ == "__main__":
    run()
