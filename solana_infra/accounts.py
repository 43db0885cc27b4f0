"""Decoders for custody-program accounts."""

from __future__ import annotations

from models.chain import PendingDeposit, PendingWithdrawal, UserBalance, VaultConfig
from solana_infra.codec import BorshReader, account_discriminator

PENDING_DEPOSIT_DISCRIMINATOR = account_discriminator("PendingErc20Deposit")
PENDING_WITHDRAWAL_DISCRIMINATOR = account_discriminator("PendingErc20Withdrawal")
USER_BALANCE_DISCRIMINATOR = account_discriminator("UserErc20Balance")
VAULT_CONFIG_DISCRIMINATOR = account_discriminator("VaultConfig")


def decode_pending_deposit(data: bytes) -> PendingDeposit:
    reader = BorshReader(data)
    reader.expect(PENDING_DEPOSIT_DISCRIMINATOR, "PendingErc20Deposit")
    return PendingDeposit(
        requester=str(reader.pubkey()),
        amount=reader.u128(),
        erc20_address=reader.take(20),
        path=reader.string(),
        request_id=reader.take(32),
    )


def decode_pending_withdrawal(data: bytes) -> PendingWithdrawal:
    reader = BorshReader(data)
    reader.expect(PENDING_WITHDRAWAL_DISCRIMINATOR, "PendingErc20Withdrawal")
    return PendingWithdrawal(
        requester=str(reader.pubkey()),
        amount=reader.u128(),
        erc20_address=reader.take(20),
        recipient_address=reader.take(20),
        path=reader.string(),
        request_id=reader.take(32),
    )


def decode_user_balance(data: bytes) -> UserBalance:
    reader = BorshReader(data)
    reader.expect(USER_BALANCE_DISCRIMINATOR, "UserErc20Balance")
    return UserBalance(amount=reader.u128())


def decode_vault_config(data: bytes) -> VaultConfig:
    reader = BorshReader(data)
    reader.expect(VAULT_CONFIG_DISCRIMINATOR, "VaultConfig")
    return VaultConfig(mpc_root_signer_address=reader.take(20))
