"""
Error taxonomy for the payment-as-swap pipeline.

Every failure the pipeline can produce maps to one ErrorKind. Components raise
the typed exceptions below; the submission controller decides what to retry
based on the kind, never on message text. The one exception is the RPC's
oversized-transaction error, which only carries a generic invalid-params code
(see classify_rpc_error).
"""

from enum import Enum
from typing import Any, Optional, List


class ErrorKind(str, Enum):
    """Classification of a pipeline failure."""
    MALFORMED_CREDENTIAL = "malformed_credential"
    INVALID_QUOTE = "invalid_quote"
    ROUTE_BUILD_FAILED = "route_build_failed"
    STALE_ROUTE = "stale_route"
    SIZE_EXCEEDED = "size_exceeded"
    LIKELY_LANDED = "likely_landed"
    TRANSIENT = "transient"
    INSUFFICIENT_BALANCE = "insufficient_balance"


class PaymentSwapError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.TRANSIENT
    retryable: bool = False

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class MalformedCredential(PaymentSwapError):
    """A credential or address string could not be parsed."""
    kind = ErrorKind.MALFORMED_CREDENTIAL


class InvalidQuote(PaymentSwapError):
    """The aggregator returned no usable quote."""
    kind = ErrorKind.INVALID_QUOTE


class RouteBuildFailed(PaymentSwapError):
    """The aggregator refused to build instructions for a quote."""
    kind = ErrorKind.ROUTE_BUILD_FAILED


class StaleRoute(PaymentSwapError):
    """A lookup table referenced by the route no longer resolves."""
    kind = ErrorKind.STALE_ROUTE


class SizeExceeded(PaymentSwapError):
    """The serialized transaction is larger than the network accepts."""
    kind = ErrorKind.SIZE_EXCEEDED

    def __init__(self, message: str, size: Optional[int] = None, limit: Optional[int] = None,
                 details: Optional[dict] = None):
        super().__init__(message, details)
        self.size = size
        self.limit = limit


class LikelyLanded(PaymentSwapError):
    """Confirmation timed out; the transaction may already be executed."""
    kind = ErrorKind.LIKELY_LANDED

    def __init__(self, message: str, signature: Optional[str] = None,
                 details: Optional[dict] = None):
        super().__init__(message, details)
        self.signature = signature


class TransientError(PaymentSwapError):
    """Network or RPC failure unrelated to size or landing."""
    kind = ErrorKind.TRANSIENT
    retryable = True


class Expired(TransientError):
    """The recency token was not recognised by the network."""


class InsufficientBalance(PaymentSwapError):
    """A principal cannot cover the amount or the fee."""
    kind = ErrorKind.INSUFFICIENT_BALANCE


class PipelineFailure(PaymentSwapError):
    """
    Terminal failure reported to the caller.

    Carries the classification of the error that ended the run, the last
    known balances and the attempt log, so the caller can decide whether
    resubmitting is safe.
    """

    def __init__(
        self,
        cause: PaymentSwapError,
        balances: Any = None,
        attempts: Optional[List[Any]] = None,
    ):
        super().__init__(f"{cause.kind.value}: {cause.message}", cause.details)
        self.cause = cause
        self.kind = cause.kind
        self.balances = balances
        self.attempts = attempts or []

    @property
    def classification(self) -> ErrorKind:
        return self.cause.kind


# Solana JSON-RPC server error codes
RPC_INVALID_PARAMS = -32602
RPC_INTERNAL_ERROR = -32603
RPC_PREFLIGHT_FAILURE = -32002
RPC_SIGNATURE_VERIFICATION_FAILURE = -32003
RPC_BLOCK_NOT_AVAILABLE = -32004
RPC_NODE_UNHEALTHY = -32005

# Transaction errors reported in preflight results
_INSUFFICIENT_FUNDS_ERRORS = {"InsufficientFundsForFee", "InsufficientFundsForRent", "InsufficientFunds"}


def _transaction_error_name(err: Any) -> Optional[str]:
    """Extract the variant name from a TransactionError value ("X" or {"X": ...})."""
    if isinstance(err, str):
        return err
    if isinstance(err, dict) and len(err) == 1:
        return next(iter(err))
    return None


def classify_transaction_error(err: Any, context: str = "transaction") -> PaymentSwapError:
    """
    Map a TransactionError (from preflight or signature status) to the taxonomy.

    Args:
        err: The "err" value reported by the RPC
        context: Label used in the error message

    Returns:
        Typed pipeline error
    """
    name = _transaction_error_name(err)
    details = {"err": err}

    if name == "BlockhashNotFound":
        return Expired(f"{context} rejected: blockhash not found", details)
    if name in _INSUFFICIENT_FUNDS_ERRORS:
        return InsufficientBalance(f"{context} rejected: {name}", details)
    if name == "InstructionError" and isinstance(err, dict):
        # [index, {"Custom": code}] or [index, "InsufficientFunds"]
        payload = err["InstructionError"]
        if isinstance(payload, list) and len(payload) == 2 and payload[1] == "InsufficientFunds":
            return InsufficientBalance(f"{context} rejected: instruction {payload[0]} InsufficientFunds", details)
    return TransientError(f"{context} failed: {err}", details)


def classify_rpc_error(error: dict) -> PaymentSwapError:
    """
    Map a JSON-RPC error object to the taxonomy.

    Args:
        error: The "error" member of a JSON-RPC response

    Returns:
        Typed pipeline error
    """
    code = error.get("code")
    message = str(error.get("message", ""))
    data = error.get("data") or {}
    details = {"code": code, "message": message}

    if code == RPC_INVALID_PARAMS and "too large" in message:
        # The RPC reports oversized packets only through the invalid-params code
        return SizeExceeded(f"RPC rejected transaction: {message}", details=details)

    if code == RPC_PREFLIGHT_FAILURE and isinstance(data, dict) and data.get("err") is not None:
        classified = classify_transaction_error(data["err"], context="preflight")
        classified.details.update(details)
        logs = data.get("logs")
        if logs:
            classified.details["logs"] = logs
        return classified

    return TransientError(f"RPC error {code}: {message}", details)
