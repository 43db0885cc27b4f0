"""Instruction builders for the custody program.

Account order mirrors the program's ``#[derive(Accounts)]`` structs;
Anchor resolves accounts positionally.
"""

from __future__ import annotations

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import INSTRUCTIONS as SYSVAR_INSTRUCTIONS_ID

from models.bridge import EvmTransactionParams
from models.chain import MpcSignature
from solana_infra.codec import BorshWriter, instruction_discriminator
from solana_infra.events import write_signature
from solana_infra.pda import BridgePdas


def _meta(key: Pubkey, signer: bool = False, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=key, is_signer=signer, is_writable=writable)


def _write_evm_params(writer: BorshWriter, params: EvmTransactionParams) -> BorshWriter:
    return (
        writer.u128(params.value)
        .u128(params.gas_limit)
        .u128(params.max_fee_per_gas)
        .u128(params.max_priority_fee_per_gas)
        .u64(params.nonce)
        .u64(params.chain_id)
    )


class CustodyInstructions:
    """Builds custody-program instructions for a given relayer payer."""

    def __init__(self, pdas: BridgePdas, payer: Pubkey) -> None:
        self._pdas = pdas
        self._payer = payer

    @property
    def program_id(self) -> Pubkey:
        return self._pdas.bridge_program

    # ── Admin ────────────────────────────────────────────────────

    def initialize_config(self, mpc_root_signer: bytes) -> Instruction:
        data = (
            BorshWriter()
            .raw(instruction_discriminator("initialize_config"))
            .fixed(mpc_root_signer, 20)
            .build()
        )
        config, _ = self._pdas.vault_config()
        return Instruction(
            self.program_id,
            data,
            [
                _meta(self._payer, signer=True, writable=True),
                _meta(config, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )

    def update_config(self, mpc_root_signer: bytes) -> Instruction:
        data = (
            BorshWriter()
            .raw(instruction_discriminator("update_config"))
            .fixed(mpc_root_signer, 20)
            .build()
        )
        config, _ = self._pdas.vault_config()
        return Instruction(self.program_id, data, [_meta(config, writable=True)])

    # ── Deposit ──────────────────────────────────────────────────

    def deposit_erc20(
        self,
        request_id: bytes,
        requester: Pubkey,
        erc20_address: bytes,
        amount: int,
        tx_params: EvmTransactionParams,
    ) -> Instruction:
        """Record a pending deposit and CPI the MPC sign request."""
        writer = (
            BorshWriter()
            .raw(instruction_discriminator("deposit_erc20"))
            .fixed(request_id, 32)
            .pubkey(requester)
            .fixed(erc20_address, 20)
            .u128(amount)
        )
        data = _write_evm_params(writer, tx_params).build()

        requester_pda, _ = self._pdas.vault_authority(requester)
        pending, _ = self._pdas.pending_deposit(request_id)
        state, _ = self._pdas.chain_signatures_state()
        event_authority, _ = self._pdas.event_authority()
        return Instruction(
            self.program_id,
            data,
            [
                _meta(self._payer, signer=True, writable=True),
                _meta(requester_pda, writable=True),
                _meta(pending, writable=True),
                _meta(self._payer, signer=True, writable=True),  # fee_payer
                _meta(state, writable=True),
                _meta(event_authority),
                _meta(self._pdas.chain_signatures_program),
                _meta(SYSTEM_PROGRAM_ID),
                _meta(SYSVAR_INSTRUCTIONS_ID),
            ],
        )

    def claim_erc20(
        self,
        request_id: bytes,
        serialized_output: bytes,
        signature: MpcSignature,
        requester: Pubkey,
        erc20_address: bytes,
    ) -> Instruction:
        """Credit the pending deposit to the requester's balance."""
        writer = (
            BorshWriter()
            .raw(instruction_discriminator("claim_erc20"))
            .fixed(request_id, 32)
            .vec_u8(serialized_output)
        )
        data = write_signature(writer, signature).build()

        pending, _ = self._pdas.pending_deposit(request_id)
        balance, _ = self._pdas.user_balance(requester, erc20_address)
        return Instruction(
            self.program_id,
            data,
            [
                _meta(self._payer, signer=True, writable=True),
                _meta(pending, writable=True),
                _meta(balance, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )

    # ── Withdrawal ───────────────────────────────────────────────

    def complete_withdraw_erc20(
        self,
        request_id: bytes,
        serialized_output: bytes,
        signature: MpcSignature,
        requester: Pubkey,
        erc20_address: bytes,
    ) -> Instruction:
        """Close the pending withdrawal, refunding on a failed transfer."""
        writer = (
            BorshWriter()
            .raw(instruction_discriminator("complete_withdraw_erc20"))
            .fixed(request_id, 32)
            .vec_u8(serialized_output)
        )
        data = write_signature(writer, signature).build()

        pending, _ = self._pdas.pending_withdrawal(request_id)
        balance, _ = self._pdas.user_balance(requester, erc20_address)
        return Instruction(
            self.program_id,
            data,
            [
                _meta(self._payer, signer=True, writable=True),
                _meta(pending, writable=True),
                _meta(balance, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )
