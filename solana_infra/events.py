"""Chain-signatures events as they appear in transaction logs.

Anchor ``emit!`` writes ``Program data: <base64(discriminator || borsh)>``.
Only the two response events matter to the relayer; every other log
line decodes to ``None``.
"""

from __future__ import annotations

import base64
import binascii

import structlog

from models.chain import EventKind, MpcSignature, SignatureEvent
from solana_infra.codec import BorshReader, BorshWriter, DecodeError, event_discriminator

logger = structlog.get_logger("solana_infra.events")

PROGRAM_DATA_PREFIX = "Program data: "

SIGNATURE_RESPONDED_DISCRIMINATOR = event_discriminator("SignatureRespondedEvent")
READ_RESPONDED_DISCRIMINATOR = event_discriminator("ReadRespondedEvent")


def _read_signature(reader: BorshReader) -> MpcSignature:
    return MpcSignature(
        big_r_x=reader.take(32),
        big_r_y=reader.take(32),
        s=reader.take(32),
        recovery_id=reader.u8(),
    )


def write_signature(writer: BorshWriter, signature: MpcSignature) -> BorshWriter:
    """Borsh layout shared by events and the completion instructions."""
    return (
        writer.fixed(signature.big_r_x, 32)
        .fixed(signature.big_r_y, 32)
        .fixed(signature.s, 32)
        .u8(signature.recovery_id)
    )


def decode_event(payload: bytes, ledger_signature: str | None = None) -> SignatureEvent | None:
    """Decode one event payload; ``None`` for unrelated events."""
    head = payload[:8]
    reader = BorshReader(payload, offset=8)
    if head == SIGNATURE_RESPONDED_DISCRIMINATOR:
        request_id = reader.take(32)
        responder = str(reader.pubkey())
        signature = _read_signature(reader)
        return SignatureEvent(
            request_id=request_id,
            kind=EventKind.SIGNATURE,
            signature=signature,
            responder=responder,
            ledger_signature=ledger_signature,
        )
    if head == READ_RESPONDED_DISCRIMINATOR:
        request_id = reader.take(32)
        responder = str(reader.pubkey())
        output = reader.vec_u8()
        signature = _read_signature(reader)
        return SignatureEvent(
            request_id=request_id,
            kind=EventKind.READ_RESPONSE,
            signature=signature,
            responder=responder,
            serialized_output=output,
            ledger_signature=ledger_signature,
        )
    return None


def parse_log_events(logs: list[str], ledger_signature: str | None = None) -> list[SignatureEvent]:
    """All response events found in one transaction's log messages."""
    events: list[SignatureEvent] = []
    for line in logs:
        if not line.startswith(PROGRAM_DATA_PREFIX):
            continue
        try:
            payload = base64.b64decode(line[len(PROGRAM_DATA_PREFIX):], validate=True)
            event = decode_event(payload, ledger_signature)
        except (binascii.Error, DecodeError) as exc:
            logger.debug("events.undecodable_log", error=str(exc), tx=ledger_signature)
            continue
        if event is not None:
            events.append(event)
    return events
