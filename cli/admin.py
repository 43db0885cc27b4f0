"""Vault admin CLI — manage the trusted MPC root signer and inspect addresses.

Usage:
    python -m cli.admin init 0x00A40C2661293d5134E53Da52951A3F7767836Ef
    python -m cli.admin update 0x00A40C2661293d5134E53Da52951A3F7767836Ef
    python -m cli.admin show
    python -m cli.admin derive --user <base58 pubkey>
    python -m cli.admin balance --user <base58 pubkey> --token 0x...
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey

from config.settings import settings
from core.errors import BridgeError, NotFoundError, ValidationError
from core.logger import setup_logging
from core.main import build_retry_policy
from models.bridge import parse_evm_address, parse_pubkey
from solana_infra.custody_client import CustodyClient, load_keypair
from solana_infra.pda import BridgePdas
from web3_infra.address_deriver import derive_evm_address

logger = structlog.get_logger("cli.admin")


def _pdas() -> BridgePdas:
    return BridgePdas(
        Pubkey.from_string(settings.BRIDGE_PROGRAM_ID),
        Pubkey.from_string(settings.CHAIN_SIGNATURES_PROGRAM_ID),
    )


def _make_custody(client: AsyncClient) -> CustodyClient:
    return CustodyClient(
        client,
        load_keypair(settings.RELAYER_PRIVATE_KEY),
        _pdas(),
        retry_policy=build_retry_policy(settings),
        commitment=Commitment(settings.SOLANA_COMMITMENT),
    )


async def cmd_init(args: argparse.Namespace) -> None:
    """Create the vault config with the given signer address."""
    parse_evm_address(args.address, "mpcRootSigner")
    async with AsyncClient(settings.SOLANA_RPC_URL) as client:
        signature = await _make_custody(client).initialize_config(args.address)
    print(f"initializeConfig: {signature}")


async def cmd_update(args: argparse.Namespace) -> None:
    """Replace the signer address in the vault config."""
    parse_evm_address(args.address, "mpcRootSigner")
    async with AsyncClient(settings.SOLANA_RPC_URL) as client:
        signature = await _make_custody(client).update_config(args.address)
    print(f"updateConfig: {signature}")


async def cmd_show(args: argparse.Namespace) -> None:
    """Print the on-chain vault config."""
    pdas = _pdas()
    config_address, _ = pdas.vault_config()
    async with AsyncClient(settings.SOLANA_RPC_URL) as client:
        try:
            config = await _make_custody(client).fetch_vault_config()
        except NotFoundError:
            print(f"Vault config {config_address} is not initialized")
            return
    print(f"Vault config:     {config_address}")
    print(f"MPC root signer:  {config.signer_checksum}")


async def cmd_balance(args: argparse.Namespace) -> None:
    """Print a user's credited balance for one ERC20 token."""
    user = parse_pubkey(args.user, "user")
    token = parse_evm_address(args.token, "erc20Address")
    async with AsyncClient(settings.SOLANA_RPC_URL) as client:
        try:
            balance = await _make_custody(client).fetch_user_balance(user, token)
        except NotFoundError:
            print(f"No balance for {user} in {args.token}")
            return
    print(f"Balance: {balance.amount}")


async def cmd_derive(args: argparse.Namespace) -> None:
    """Print the vault EVM address and, optionally, a user's deposit address."""
    pdas = _pdas()
    authority, _ = pdas.global_vault_authority()
    vault = derive_evm_address(settings.VAULT_ROOT_PATH, str(authority), settings.MPC_BASE_PUBLIC_KEY)
    print(f"Vault EVM address:    {vault}")
    if args.user:
        user = parse_pubkey(args.user, "user")
        user_authority, _ = pdas.vault_authority(user)
        deposit = derive_evm_address(str(user), str(user_authority), settings.MPC_BASE_PUBLIC_KEY)
        print(f"Deposit EVM address:  {deposit}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Bridge vault admin — MPC root signer configuration",
        prog="admin",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sub_init = subparsers.add_parser("init", help="Initialize the vault config")
    sub_init.add_argument("address", help="20-byte MPC root signer address (0x...)")

    sub_update = subparsers.add_parser("update", help="Update the MPC root signer")
    sub_update.add_argument("address", help="20-byte MPC root signer address (0x...)")

    subparsers.add_parser("show", help="Show the on-chain vault config")

    sub_derive = subparsers.add_parser("derive", help="Show derived EVM addresses")
    sub_derive.add_argument("--user", help="Base58 user public key")

    sub_balance = subparsers.add_parser("balance", help="Show a user's bridged token balance")
    sub_balance.add_argument("--user", required=True, help="Base58 user public key")
    sub_balance.add_argument("--token", required=True, help="20-byte ERC20 address (0x...)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    cmd_map = {
        "init": cmd_init,
        "update": cmd_update,
        "show": cmd_show,
        "derive": cmd_derive,
        "balance": cmd_balance,
    }

    setup_logging()
    try:
        asyncio.run(cmd_map[args.command](args))
    except ValidationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    except BridgeError as exc:
        logger.error("admin.command_failed", command=args.command, error=str(exc))
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
