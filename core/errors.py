"""Error taxonomy shared by the ledger clients and the flow orchestrator."""

from __future__ import annotations

__all__ = [
    "BridgeError",
    "ChainSubmissionError",
    "DerivationError",
    "DuplicateRequestError",
    "NotFoundError",
    "RetryExhaustedError",
    "RpcError",
    "SignatureTimeoutError",
    "ValidationError",
    "is_retryable",
]


class BridgeError(Exception):
    """Base class for every relayer error."""


class ValidationError(BridgeError):
    """Malformed input, rejected before any chain call."""


class DerivationError(ValidationError):
    """Base public key is not a valid uncompressed secp256k1 point."""


class NotFoundError(BridgeError):
    """An expected on-chain account does not exist."""

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address


class SignatureTimeoutError(BridgeError, TimeoutError):
    """The MPC signer did not answer within the flow's window."""

    def __init__(self, message: str, request_id: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class RpcError(BridgeError):
    """Transient node or network failure."""

    def __init__(self, message: str, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class RetryExhaustedError(RpcError):
    """Raised by ``retry`` once every attempt has failed."""

    def __init__(self, attempts: int, last_error: Exception | None) -> None:
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(
            f"Retry failed after {attempts} attempts: {detail}",
            last_error=last_error,
        )
        self.attempts = attempts


class DuplicateRequestError(BridgeError):
    """The request id is already being processed. Not a failure."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Request {request_id} is already processing")
        self.request_id = request_id


class ChainSubmissionError(BridgeError):
    """Broadcast or confirmation failed on one of the ledgers."""

    def __init__(
        self,
        message: str,
        chain: str,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(message)
        self.chain = chain
        self.tx_hash = tx_hash


def is_retryable(exc: BaseException) -> bool:
    """Retry predicate for individual ledger reads."""
    return not isinstance(
        exc,
        (ValidationError, NotFoundError, DuplicateRequestError, ChainSubmissionError),
    )
