"""Bridge relayer — web3_infra package.

EVM-side primitives:
- address_deriver: MPC epsilon derivation of per-user EVM addresses
- evm_tx / request_id: type-2 transaction encoding and request ids
- EvmAdapter: nonce, fees, ERC20 reads and signed broadcasts
- RPCManager: endpoint failover and health probing
"""

from .address_deriver import derive_epsilon, derive_evm_address, derive_public_key
from .evm_adapter import EvmAdapter, EvmAdapterConfig, EvmTxResult
from .request_id import generate_request_id
from .rpc_manager import RPCManager, RPCManagerConfig

__all__ = [
    "EvmAdapter",
    "EvmAdapterConfig",
    "EvmTxResult",
    "RPCManager",
    "RPCManagerConfig",
    "derive_epsilon",
    "derive_evm_address",
    "derive_public_key",
    "generate_request_id",
]
