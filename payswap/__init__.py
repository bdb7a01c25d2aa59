"""Payment-as-Swap - Pay in SOL, deliver tokens, with a separate fee payer."""

from .config import PipelineConfig, NATIVE_MINT, LAMPORTS_PER_SOL, MAX_TRANSACTION_SIZE
from .errors import (
    ErrorKind,
    PaymentSwapError,
    MalformedCredential,
    InvalidQuote,
    RouteBuildFailed,
    StaleRoute,
    SizeExceeded,
    LikelyLanded,
    TransientError,
    Expired,
    InsufficientBalance,
    PipelineFailure,
    classify_rpc_error,
)
from .keys import Principal, Role, parse_signer, parse_address, holding_account
from .jupiter_client import JupiterClient, Quote
from .assembler import InstructionAssembler, InstructionSet, InstructionKind
from .rpc import LedgerRpc
from .builder import TransactionBuilder, SignedTransaction
from .verifier import BalanceVerifier, BalanceSnapshot
from .controller import SubmissionController, SubmissionState, AttemptRecord
from .orchestrator import (
    PaymentSwapOrchestrator,
    PaymentRequest,
    ExecutionResult,
    spendable_native_amount,
)

__all__ = [
    "PipelineConfig",
    "NATIVE_MINT",
    "LAMPORTS_PER_SOL",
    "MAX_TRANSACTION_SIZE",
    "ErrorKind",
    "PaymentSwapError",
    "MalformedCredential",
    "InvalidQuote",
    "RouteBuildFailed",
    "StaleRoute",
    "SizeExceeded",
    "LikelyLanded",
    "TransientError",
    "Expired",
    "InsufficientBalance",
    "PipelineFailure",
    "classify_rpc_error",
    "Principal",
    "Role",
    "parse_signer",
    "parse_address",
    "holding_account",
    "JupiterClient",
    "Quote",
    "InstructionAssembler",
    "InstructionSet",
    "InstructionKind",
    "LedgerRpc",
    "TransactionBuilder",
    "SignedTransaction",
    "BalanceVerifier",
    "BalanceSnapshot",
    "SubmissionController",
    "SubmissionState",
    "AttemptRecord",
    "PaymentSwapOrchestrator",
    "PaymentRequest",
    "ExecutionResult",
    "spendable_native_amount",
]
