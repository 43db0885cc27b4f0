"""Tests for solana_infra.signature_watcher — log scanning into the event bus."""

from __future__ import annotations

import asyncio
import base64
from types import SimpleNamespace

import pytest
from solders.pubkey import Pubkey

from core.event_bus import TOPIC_MPC_RESPONSE, EventBus
from models.chain import EventKind, MpcSignature
from solana_infra.codec import BorshWriter
from solana_infra.events import (
    READ_RESPONDED_DISCRIMINATOR,
    SIGNATURE_RESPONDED_DISCRIMINATOR,
    write_signature,
)
from solana_infra.signature_watcher import SignatureEventWatcher

PROGRAM = Pubkey.from_string("4uvZW8K4g4jBg7dzPNbb9XDxJLFBK7V6iC76uofmYvEU")
RESPONDER = Pubkey.new_unique()
SIG = MpcSignature(b"\x01" * 32, b"\x02" * 32, b"\x03" * 32, 0)


def _signature_log(request_id: bytes, responder: Pubkey = RESPONDER) -> str:
    payload = write_signature(
        BorshWriter().raw(SIGNATURE_RESPONDED_DISCRIMINATOR).fixed(request_id, 32).pubkey(responder),
        SIG,
    ).build()
    return "Program data: " + base64.b64encode(payload).decode()


def _read_log(request_id: bytes) -> str:
    writer = (
        BorshWriter()
        .raw(READ_RESPONDED_DISCRIMINATOR)
        .fixed(request_id, 32)
        .pubkey(RESPONDER)
        .vec_u8(b"\x01")
    )
    payload = write_signature(writer, SIG).build()
    return "Program data: " + base64.b64encode(payload).decode()


def _tx(*logs: str):
    return SimpleNamespace(transaction=SimpleNamespace(meta=SimpleNamespace(log_messages=list(logs))))


class FakeReader:
    """Newest-first signature list plus a signature -> transaction map."""

    def __init__(self) -> None:
        self.infos: list[SimpleNamespace] = []
        self.transactions: dict[str, object] = {}
        self.fetched: list[str] = []

    def add(self, signature: str, tx, err=None) -> None:
        self.infos.insert(0, SimpleNamespace(signature=signature, err=err))
        if tx is not None:
            self.transactions[signature] = tx

    async def get_signatures_for_address(self, address, limit=100):
        return list(self.infos[:limit])

    async def get_transaction(self, signature):
        self.fetched.append(str(signature))
        return self.transactions.get(str(signature))


class TestSignatureEventWatcher:
    @pytest.mark.asyncio
    async def test_publishes_oldest_first(self):
        reader, bus = FakeReader(), EventBus()
        sub = bus.subscribe(TOPIC_MPC_RESPONSE)
        rid = b"\x0a" * 32
        reader.add("tx-sign", _tx("Program log: sign", _signature_log(rid)))
        reader.add("tx-read", _tx(_read_log(rid)))

        watcher = SignatureEventWatcher(reader, bus, PROGRAM)
        events = await watcher.scan_once()

        assert [e.kind for e in events] == [EventKind.SIGNATURE, EventKind.READ_RESPONSE]
        first = await sub.get()
        assert first.payload["event"].ledger_signature == "tx-sign"
        assert first.trace_id == "0x" + rid.hex()
        assert sub.pending() == 1

    @pytest.mark.asyncio
    async def test_seen_transactions_skipped(self):
        reader, bus = FakeReader(), EventBus()
        reader.add("tx-1", _tx(_signature_log(b"\x01" * 32)))
        watcher = SignatureEventWatcher(reader, bus, PROGRAM)

        assert len(await watcher.scan_once()) == 1
        assert await watcher.scan_once() == []
        assert reader.fetched == ["tx-1"]

    @pytest.mark.asyncio
    async def test_failed_and_unavailable_transactions(self):
        reader, bus = FakeReader(), EventBus()
        reader.add("tx-failed", _tx(_signature_log(b"\x01" * 32)), err={"InstructionError": 0})
        reader.add("tx-late", None)
        watcher = SignatureEventWatcher(reader, bus, PROGRAM)

        assert await watcher.scan_once() == []
        assert reader.fetched == ["tx-late"]

        reader.transactions["tx-late"] = _tx(_signature_log(b"\x02" * 32))
        events = await watcher.scan_once()
        assert [e.request_id for e in events] == [b"\x02" * 32]

    @pytest.mark.asyncio
    async def test_foreign_responder_ignored(self):
        reader, bus = FakeReader(), EventBus()
        reader.add("tx", _tx(_signature_log(b"\x01" * 32, responder=Pubkey.new_unique())))
        watcher = SignatureEventWatcher(reader, bus, PROGRAM, responder=str(RESPONDER))
        assert await watcher.scan_once() == []

    @pytest.mark.asyncio
    async def test_seen_set_is_bounded(self):
        reader, bus = FakeReader(), EventBus()
        for i in range(5):
            reader.add(f"tx-{i}", _tx())
        watcher = SignatureEventWatcher(reader, bus, PROGRAM, max_seen=3)
        await watcher.scan_once()
        assert len(watcher._seen) == 3

    @pytest.mark.asyncio
    async def test_run_stops_and_wakes(self):
        reader, bus = FakeReader(), EventBus()
        watcher = SignatureEventWatcher(reader, bus, PROGRAM, interval_s=30)
        stop = asyncio.Event()
        task = asyncio.create_task(watcher.run(stop))

        await asyncio.sleep(0.01)
        assert watcher.scans == 1
        watcher.request_scan()
        await asyncio.sleep(0.01)
        assert watcher.scans == 2

        stop.set()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_run_survives_scan_errors(self):
        reader, bus = FakeReader(), EventBus()
        calls = 0

        async def flaky(address, limit=100):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("node down")
            return []

        reader.get_signatures_for_address = flaky
        watcher = SignatureEventWatcher(reader, bus, PROGRAM, interval_s=0.01)
        stop = asyncio.Event()
        task = asyncio.create_task(watcher.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert calls >= 2
