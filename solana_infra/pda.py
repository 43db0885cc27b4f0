"""Program-derived addresses of the custody and chain-signatures programs."""

from __future__ import annotations

from solders.pubkey import Pubkey

from core.errors import ValidationError

VAULT_AUTHORITY_SEED = b"vault_authority"
GLOBAL_VAULT_AUTHORITY_SEED = b"global_vault_authority"
VAULT_CONFIG_SEED = b"vault_config"
PENDING_DEPOSIT_SEED = b"pending_erc20_deposit"
PENDING_WITHDRAWAL_SEED = b"pending_erc20_withdrawal"
USER_BALANCE_SEED = b"user_erc20_balance"
PROGRAM_STATE_SEED = b"program-state"
EVENT_AUTHORITY_SEED = b"__event_authority"


def _require_len(value: bytes, length: int, label: str) -> bytes:
    if len(value) != length:
        raise ValidationError(f"{label} must be {length} bytes, got {len(value)}")
    return value


class BridgePdas:
    """PDA derivations bound to one pair of program ids.

    Parameters
    ----------
    bridge_program:
        Custody (vault) program id.
    chain_signatures_program:
        MPC chain-signatures program id.
    """

    def __init__(self, bridge_program: Pubkey, chain_signatures_program: Pubkey) -> None:
        self.bridge_program = bridge_program
        self.chain_signatures_program = chain_signatures_program

    def vault_authority(self, user: Pubkey) -> tuple[Pubkey, int]:
        """Per-user signer PDA; its string form is the request-id sender."""
        return Pubkey.find_program_address([VAULT_AUTHORITY_SEED, bytes(user)], self.bridge_program)

    def global_vault_authority(self) -> tuple[Pubkey, int]:
        return Pubkey.find_program_address([GLOBAL_VAULT_AUTHORITY_SEED], self.bridge_program)

    def vault_config(self) -> tuple[Pubkey, int]:
        return Pubkey.find_program_address([VAULT_CONFIG_SEED], self.bridge_program)

    def pending_deposit(self, request_id: bytes) -> tuple[Pubkey, int]:
        _require_len(request_id, 32, "requestId")
        return Pubkey.find_program_address([PENDING_DEPOSIT_SEED, request_id], self.bridge_program)

    def pending_withdrawal(self, request_id: bytes) -> tuple[Pubkey, int]:
        _require_len(request_id, 32, "requestId")
        return Pubkey.find_program_address([PENDING_WITHDRAWAL_SEED, request_id], self.bridge_program)

    def user_balance(self, user: Pubkey, erc20_address: bytes) -> tuple[Pubkey, int]:
        _require_len(erc20_address, 20, "erc20Address")
        return Pubkey.find_program_address(
            [USER_BALANCE_SEED, bytes(user), erc20_address], self.bridge_program
        )

    def chain_signatures_state(self) -> tuple[Pubkey, int]:
        return Pubkey.find_program_address([PROGRAM_STATE_SEED], self.chain_signatures_program)

    def event_authority(self) -> tuple[Pubkey, int]:
        """Anchor ``emit_cpi!`` authority of the chain-signatures program."""
        return Pubkey.find_program_address([EVENT_AUTHORITY_SEED], self.chain_signatures_program)
