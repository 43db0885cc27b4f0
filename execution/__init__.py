"""Bridge relayer — execution package."""

from .completion import DepositCompletion, MpcResponseVerifier, WithdrawalCompletion
from .flow_registry import FlowRegistry
from .orchestrator import OrchestratorConfig, SignatureFlowOrchestrator, SubmitOutcome
from .request_tracker import RequestTracker
from .signature_inbox import SignatureInbox

__all__ = [
    "DepositCompletion",
    "FlowRegistry",
    "MpcResponseVerifier",
    "OrchestratorConfig",
    "RequestTracker",
    "SignatureFlowOrchestrator",
    "SignatureInbox",
    "SubmitOutcome",
    "WithdrawalCompletion",
]
