"""SignatureEventWatcher — turns chain-signatures program logs into bus events.

Each scan lists the program's most recent transactions, fetches the
ones not seen before and publishes every decoded response event on
``TOPIC_MPC_RESPONSE``. Both reads go through :class:`CachedLedgerReader`,
so overlapping scans and several flows polling at once cost one RPC
call per TTL window.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any

import structlog
from solders.pubkey import Pubkey

from core.event_bus import TOPIC_MPC_RESPONSE, EventBus
from models.chain import SignatureEvent
from solana_infra.events import parse_log_events
from solana_infra.result_cache import CachedLedgerReader

logger = structlog.get_logger("solana_infra.signature_watcher")


def _log_messages(tx: Any) -> list[str]:
    meta = getattr(getattr(tx, "transaction", None), "meta", None)
    if meta is None:
        meta = getattr(tx, "meta", None)
    return list(getattr(meta, "log_messages", None) or [])


class SignatureEventWatcher:
    """Polls the chain-signatures program and publishes response events.

    Parameters
    ----------
    reader:
        Cached ledger reads.
    bus:
        Destination of decoded :class:`SignatureEvent` objects.
    program_id:
        Chain-signatures program whose transactions are scanned.
    responder:
        When set, events from any other responder are ignored.
    scan_limit:
        Signatures requested per scan.
    interval_s:
        Delay between scans in :meth:`run`.
    """

    def __init__(
        self,
        reader: CachedLedgerReader,
        bus: EventBus,
        program_id: Pubkey,
        responder: str | None = None,
        scan_limit: int = 100,
        interval_s: float = 10.0,
        max_seen: int = 5_000,
    ) -> None:
        self._reader = reader
        self._bus = bus
        self._program_id = program_id
        self._responder = responder or None
        self._scan_limit = scan_limit
        self._interval_s = interval_s
        self._max_seen = max_seen
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._wake = asyncio.Event()
        self.scans = 0
        self.events_published = 0

    def request_scan(self) -> None:
        """Cut the current sleep short; flows call this while waiting."""
        self._wake.set()

    async def scan_once(self) -> list[SignatureEvent]:
        """One pass over recent program transactions; returns new events."""
        self.scans += 1
        infos = await self._reader.get_signatures_for_address(
            self._program_id, limit=self._scan_limit
        )

        published: list[SignatureEvent] = []
        # oldest first so a SIGNATURE precedes the READ_RESPONSE it enabled
        for info in reversed(infos):
            tx_sig = str(info.signature)
            if tx_sig in self._seen:
                continue
            if getattr(info, "err", None) is not None:
                self._mark_seen(tx_sig)
                continue

            tx = await self._reader.get_transaction(info.signature)
            if tx is None:
                # not yet retrievable at this commitment; retry next scan
                continue
            self._mark_seen(tx_sig)

            for event in parse_log_events(_log_messages(tx), ledger_signature=tx_sig):
                if self._responder is not None and event.responder != self._responder:
                    logger.warning(
                        "signature_watcher.foreign_responder",
                        request_id=event.request_id_hex,
                        responder=event.responder,
                    )
                    continue
                await self._bus.publish(
                    TOPIC_MPC_RESPONSE,
                    {"event": event},
                    trace_id=event.request_id_hex,
                )
                published.append(event)

        if published:
            self.events_published += len(published)
            logger.info(
                "signature_watcher.events_published",
                count=len(published),
                kinds=sorted({e.kind.value for e in published}),
            )
        return published

    async def run(self, stop: asyncio.Event) -> None:
        """Scan until *stop* is set; scan errors are logged and retried."""
        logger.info(
            "signature_watcher.started",
            program=str(self._program_id),
            interval_s=self._interval_s,
        )
        while not stop.is_set():
            try:
                await self.scan_once()
            except Exception as exc:
                logger.warning("signature_watcher.scan_failed", error=str(exc))

            self._wake.clear()
            waiters = [
                asyncio.ensure_future(stop.wait()),
                asyncio.ensure_future(self._wake.wait()),
            ]
            try:
                await asyncio.wait(
                    waiters, timeout=self._interval_s, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for w in waiters:
                    w.cancel()
        logger.info("signature_watcher.stopped", scans=self.scans)

    def _mark_seen(self, tx_sig: str) -> None:
        self._seen[tx_sig] = None
        while len(self._seen) > self._max_seen:
            self._seen.popitem(last=False)
