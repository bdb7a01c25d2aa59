"""Tests for error classification."""

import pytest

from payswap.errors import (
    ErrorKind,
    Expired,
    InsufficientBalance,
    LikelyLanded,
    MalformedCredential,
    PipelineFailure,
    SizeExceeded,
    TransientError,
    classify_rpc_error,
    classify_transaction_error,
)


# ============================================================================
# Unit Tests - error types
# ============================================================================

class TestErrorTypes:
    """Tests for kinds and retry flags."""

    def test_only_transient_is_retryable(self):
        assert TransientError("x").retryable is True
        assert Expired("x").retryable is True
        assert LikelyLanded("x").retryable is False
        assert SizeExceeded("x").retryable is False
        assert MalformedCredential("x").retryable is False

    def test_expired_is_transient(self):
        assert Expired("x").kind == ErrorKind.TRANSIENT

    def test_details_default_to_empty(self):
        assert TransientError("x").details == {}

    def test_pipeline_failure_keeps_cause(self):
        cause = LikelyLanded("timed out", signature="abc")
        failure = PipelineFailure(cause, balances="snapshot", attempts=[1, 2])

        assert failure.classification == ErrorKind.LIKELY_LANDED
        assert failure.kind == ErrorKind.LIKELY_LANDED
        assert failure.cause is cause
        assert failure.balances == "snapshot"
        assert failure.attempts == [1, 2]
        assert "likely_landed" in str(failure)

    def test_pipeline_failure_defaults(self):
        failure = PipelineFailure(InsufficientBalance("empty"))
        assert failure.balances is None
        assert failure.attempts == []


# ============================================================================
# Unit Tests - classify_rpc_error
# ============================================================================

class TestClassifyRpcError:
    """Tests for JSON-RPC error mapping."""

    def test_oversized_transaction(self):
        error = classify_rpc_error({
            "code": -32602,
            "message": "base64 encoded solana_transaction::versioned::VersionedTransaction too large: 1644 bytes (max: encoded/raw 1644/1232)",
        })
        assert isinstance(error, SizeExceeded)

    def test_other_invalid_params_is_transient(self):
        error = classify_rpc_error({"code": -32602, "message": "invalid type: map"})
        assert isinstance(error, TransientError)

    def test_blockhash_not_found(self):
        error = classify_rpc_error({
            "code": -32002,
            "message": "Transaction simulation failed: Blockhash not found",
            "data": {"err": "BlockhashNotFound", "logs": []},
        })
        assert isinstance(error, Expired)
        assert error.details["code"] == -32002

    @pytest.mark.parametrize("err", [
        "InsufficientFundsForFee",
        {"InsufficientFundsForRent": {"account_index": 0}},
        {"InstructionError": [2, "InsufficientFunds"]},
    ])
    def test_insufficient_funds(self, err):
        error = classify_rpc_error({
            "code": -32002,
            "message": "Transaction simulation failed",
            "data": {"err": err, "logs": ["Program log: insufficient lamports"]},
        })
        assert isinstance(error, InsufficientBalance)
        assert error.details["logs"] == ["Program log: insufficient lamports"]

    def test_program_error_is_transient(self):
        error = classify_rpc_error({
            "code": -32002,
            "message": "Transaction simulation failed",
            "data": {"err": {"InstructionError": [3, {"Custom": 6001}]}},
        })
        assert error.kind == ErrorKind.TRANSIENT

    def test_node_unhealthy(self):
        error = classify_rpc_error({"code": -32005, "message": "Node is behind by 42 slots"})
        assert isinstance(error, TransientError)
        assert error.details["code"] == -32005


# ============================================================================
# Unit Tests - classify_transaction_error
# ============================================================================

class TestClassifyTransactionError:
    """Tests for on-chain status error mapping."""

    def test_slippage_exceeded_is_transient(self):
        error = classify_transaction_error({"InstructionError": [4, {"Custom": 6001}]}, context="status")
        assert isinstance(error, TransientError)
        assert error.message.startswith("status failed")

    def test_unknown_shape(self):
        assert isinstance(classify_transaction_error(["odd"]), TransientError)
