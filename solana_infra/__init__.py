"""Bridge relayer — solana_infra package.

Custody-program access on the Solana ledger:
- BridgePdas / CustodyInstructions: account derivation and instruction encoding
- CustodyClient: account reads and confirmed submissions
- CachedLedgerReader / ResultCache: TTL read-through for hot RPC reads
- SignatureEventWatcher: MPC response events from program logs
"""

from .custody_client import CustodyClient, load_keypair
from .instructions import CustodyInstructions
from .pda import BridgePdas
from .result_cache import CachedLedgerReader, ResultCache
from .signature_watcher import SignatureEventWatcher

__all__ = [
    "BridgePdas",
    "CachedLedgerReader",
    "CustodyClient",
    "CustodyInstructions",
    "ResultCache",
    "SignatureEventWatcher",
    "load_keypair",
]
