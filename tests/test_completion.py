"""Tests for execution.completion — output decoding, signer checks, both strategies."""

from __future__ import annotations

import pytest
from eth_keys import keys
from solders.pubkey import Pubkey

from core.errors import ChainSubmissionError, NotFoundError, ValidationError
from execution.completion import (
    DepositCompletion,
    MpcResponseVerifier,
    WithdrawalCompletion,
    decode_transfer_output,
    response_message_hash,
)
from models.chain import EventKind, MpcSignature, PendingDeposit, SignatureEvent, VaultConfig

PK1 = keys.PrivateKey((1).to_bytes(32, "big"))
PK2 = keys.PrivateKey((2).to_bytes(32, "big"))
SIGNER1 = "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"

REQUEST_ID = b"\x42" * 32
USER = Pubkey.from_string("Dewq9xyD1MZi1rE588XZFvK7uUqkcHLgCnDsn9Ns4H9M")
USDC = bytes.fromhex("1c7d4b196cb0c7b01d743fbc6116a902379c7238")


def _read_response(output: bytes, pk=PK1, request_id: bytes = REQUEST_ID) -> SignatureEvent:
    sig = pk.sign_msg_hash(response_message_hash(request_id, output))
    return SignatureEvent(
        request_id=request_id,
        kind=EventKind.READ_RESPONSE,
        signature=MpcSignature(
            big_r_x=sig.r.to_bytes(32, "big"),
            big_r_y=b"\x00" * 32,
            s=sig.s.to_bytes(32, "big"),
            recovery_id=sig.v,
        ),
        responder="responder",
        serialized_output=output,
    )


class FakeCustody:
    def __init__(self, vault_signer: bytes | None = None, pending: bool = True) -> None:
        self.vault_signer = vault_signer
        self.pending = pending
        self.claims: list[tuple] = []
        self.completions: list[tuple] = []

    async def fetch_vault_config(self) -> VaultConfig:
        if self.vault_signer is None:
            raise NotFoundError("vault config not found")
        return VaultConfig(mpc_root_signer_address=self.vault_signer)

    async def fetch_pending_deposit(self, request_id: bytes) -> PendingDeposit:
        if not self.pending:
            raise NotFoundError("pending deposit not found")
        return PendingDeposit(str(USER), 1, USDC, str(USER), request_id)

    async def claim_erc20(self, *args) -> str:
        self.claims.append(args)
        return "claim-sig"

    async def complete_withdraw_erc20(self, *args) -> str:
        self.completions.append(args)
        return "complete-sig"


# ──────────────────────────────────────────────
# Output decoding
# ──────────────────────────────────────────────


class TestDecodeTransferOutput:
    def test_true(self):
        assert decode_transfer_output(b"\x01").success

    def test_false(self):
        out = decode_transfer_output(b"\x00")
        assert not out.success and not out.error_response

    def test_error_prefix(self):
        out = decode_transfer_output(bytes.fromhex("deadbeef") + b"reverted")
        assert not out.success and out.error_response

    @pytest.mark.parametrize("output", [b"", b"\x02", b"\x01\x00"])
    def test_malformed(self, output):
        with pytest.raises(ValidationError):
            decode_transfer_output(output)


# ──────────────────────────────────────────────
# Verifier
# ──────────────────────────────────────────────


class TestMpcResponseVerifier:
    @pytest.mark.asyncio
    async def test_uses_vault_config_signer(self):
        custody = FakeCustody(vault_signer=bytes.fromhex(SIGNER1[2:]))
        verifier = MpcResponseVerifier(custody, fallback_signer="0x" + "00" * 20)
        assert await verifier.verify(_read_response(b"\x01")) == SIGNER1

    @pytest.mark.asyncio
    async def test_falls_back_without_vault_config(self):
        verifier = MpcResponseVerifier(FakeCustody(), fallback_signer=SIGNER1)
        assert await verifier.trusted_signer() == SIGNER1
        await verifier.verify(_read_response(b"\x01"))

    @pytest.mark.asyncio
    async def test_rejects_foreign_signer(self):
        verifier = MpcResponseVerifier(FakeCustody(), fallback_signer=SIGNER1)
        with pytest.raises(ValidationError, match="signed by"):
            await verifier.verify(_read_response(b"\x01", pk=PK2))

    @pytest.mark.asyncio
    async def test_rejects_tampered_output(self):
        verifier = MpcResponseVerifier(FakeCustody(), fallback_signer=SIGNER1)
        event = _read_response(b"\x00")
        tampered = SignatureEvent(
            request_id=event.request_id,
            kind=event.kind,
            signature=event.signature,
            responder=event.responder,
            serialized_output=b"\x01",
        )
        with pytest.raises(ValidationError):
            await verifier.verify(tampered)

    @pytest.mark.asyncio
    async def test_rejects_signature_event(self):
        verifier = MpcResponseVerifier(FakeCustody(), fallback_signer=SIGNER1)
        event = _read_response(b"\x01")
        wrong_kind = SignatureEvent(
            request_id=event.request_id,
            kind=EventKind.SIGNATURE,
            signature=event.signature,
            responder=event.responder,
        )
        with pytest.raises(ValidationError, match="READ_RESPONSE"):
            await verifier.verify(wrong_kind)


# ──────────────────────────────────────────────
# Strategies
# ──────────────────────────────────────────────


class TestDepositCompletion:
    def _strategy(self, custody: FakeCustody) -> DepositCompletion:
        verifier = MpcResponseVerifier(custody, fallback_signer=SIGNER1)
        return DepositCompletion(custody, verifier, USER, USDC)

    @pytest.mark.asyncio
    async def test_claims_successful_transfer(self):
        custody = FakeCustody()
        result = await self._strategy(custody).complete(_read_response(b"\x01"))
        assert result.ledger_signature == "claim-sig"
        assert not result.refunded
        request_id, output, _sig, requester, erc20 = custody.claims[0]
        assert (request_id, output, requester, erc20) == (REQUEST_ID, b"\x01", USER, USDC)

    @pytest.mark.asyncio
    async def test_already_claimed(self):
        custody = FakeCustody(pending=False)
        result = await self._strategy(custody).complete(_read_response(b"\x01"))
        assert result.already_settled
        assert result.ledger_signature is None
        assert custody.claims == []

    @pytest.mark.asyncio
    async def test_failed_transfer_is_not_claimed(self):
        custody = FakeCustody()
        with pytest.raises(ChainSubmissionError) as exc_info:
            await self._strategy(custody).complete(_read_response(b"\x00"))
        assert exc_info.value.chain == "evm"
        assert custody.claims == []


class TestWithdrawalCompletion:
    def _strategy(self, custody: FakeCustody) -> WithdrawalCompletion:
        verifier = MpcResponseVerifier(custody, fallback_signer=SIGNER1)
        return WithdrawalCompletion(custody, verifier, USER, USDC)

    @pytest.mark.asyncio
    async def test_success(self):
        custody = FakeCustody()
        result = await self._strategy(custody).complete(_read_response(b"\x01"))
        assert result == result.__class__(ledger_signature="complete-sig", refunded=False)

    @pytest.mark.asyncio
    async def test_refund_on_false(self):
        result = await self._strategy(FakeCustody()).complete(_read_response(b"\x00"))
        assert result.refunded

    @pytest.mark.asyncio
    async def test_refund_on_error_response(self):
        custody = FakeCustody()
        output = bytes.fromhex("deadbeef") + b"\x00" * 4
        result = await self._strategy(custody).complete(_read_response(output))
        assert result.refunded
        assert custody.completions[0][1] == output

    @pytest.mark.asyncio
    async def test_untrusted_response_not_submitted(self):
        custody = FakeCustody()
        with pytest.raises(ValidationError):
            await self._strategy(custody).complete(_read_response(b"\x01", pk=PK2))
        assert custody.completions == []
