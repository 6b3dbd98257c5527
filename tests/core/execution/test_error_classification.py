"""
Tests for the cancellation heuristic and the ordered error classifier.
"""

import pytest

from vaultflow.core.execution.errors import (
    ERROR_RULES,
    ErrorCategory,
    GENERIC_FAILURE_MESSAGE,
    RpcError,
    StaleSimulationError,
    UserCancelledError,
    classify_error,
    format_transaction_error,
    is_user_cancellation,
)


class ProviderRpcError(Exception):
    """Shape of the errors browser wallets raise."""

    def __init__(self, message, code=None, reason=None):
        super().__init__(message)
        self.code = code
        self.reason = reason


# ============================================================================
# Cancellation heuristic
# ============================================================================

class TestCancellationHeuristic:
    @pytest.mark.parametrize(
        "message",
        [
            "User rejected the request.",
            "MetaMask Tx Signature: User denied transaction signature.",
            "user cancelled",
            "Request cancelled by user",
            "Signing aborted",
            "ACTION_CANCELLED",
            "Request denied",
        ],
    )
    def test_rejection_vocabulary(self, message):
        assert is_user_cancellation(Exception(message))

    @pytest.mark.parametrize("code", [4001, 4900, "4001", "ACTION_REJECTED", "user_rejected"])
    def test_rejection_codes(self, code):
        assert is_user_cancellation(ProviderRpcError("Something happened", code=code))

    def test_reason_attribute(self):
        error = ProviderRpcError("ethers error", reason="rejected")
        assert is_user_cancellation(error)

    def test_json_rpc_error_payload(self):
        assert is_user_cancellation({"code": 4001, "message": "Nope"})
        assert is_user_cancellation(Exception({"code": 4001, "message": "Nope"}))

    def test_cause_chain(self):
        try:
            try:
                raise ProviderRpcError("User denied transaction signature", code=4001)
            except ProviderRpcError as inner:
                raise RuntimeError("Wallet call failed") from inner
        except RuntimeError as outer:
            assert is_user_cancellation(outer)

    def test_typed_cancellation(self):
        assert is_user_cancellation(UserCancelledError())

    @pytest.mark.parametrize(
        "error",
        [
            Exception("execution reverted"),
            ProviderRpcError("Internal JSON-RPC error.", code=-32603),
            ProviderRpcError("Something", code=True),
            Exception(""),
        ],
    )
    def test_non_cancellations(self, error):
        assert not is_user_cancellation(error)


# ============================================================================
# Classifier
# ============================================================================

class TestClassifier:
    def test_rule_priority_order(self):
        assert [rule.category for rule in ERROR_RULES] == [
            ErrorCategory.CANCELLED,
            ErrorCategory.INSUFFICIENT_FUNDS,
            ErrorCategory.REVERTED,
            ErrorCategory.NETWORK,
            ErrorCategory.GAS,
            ErrorCategory.NOT_READY,
            ErrorCategory.FAILED,
            ErrorCategory.PASSTHROUGH,
        ]

    def test_cancellation(self):
        classified = classify_error(ProviderRpcError("User rejected the request", code=4001))
        assert classified.category == ErrorCategory.CANCELLED
        assert classified.message == "Transaction cancelled."
        assert classified.is_cancellation

    def test_insufficient_beats_gas(self):
        classified = classify_error(Exception("insufficient funds for gas * price + value"))
        assert classified.category == ErrorCategory.INSUFFICIENT_FUNDS
        assert classified.message == "Insufficient balance. Please check your available funds."

    def test_insufficient_breakdown_passes_through(self):
        message = "Insufficient USDC. Requested: 10, Available: 5"
        assert format_transaction_error(Exception(message)) == message

    def test_reverted(self):
        classified = classify_error(Exception("execution reverted: ERC4626: deposit more than max"))
        assert classified.category == ErrorCategory.REVERTED
        assert classified.message.startswith("Transaction was reverted.")

    @pytest.mark.parametrize("message", ["fetch failed", "Request timeout", "connection refused"])
    def test_network_beats_generic_failure(self, message):
        classified = classify_error(Exception(message))
        assert classified.category == ErrorCategory.NETWORK
        assert classified.message == "Network error. Please check your connection and try again."

    def test_rpc_error(self):
        classified = classify_error(RpcError("RPC request failed (eth_call): ConnectError"))
        assert classified.category == ErrorCategory.NETWORK

    def test_gas(self):
        classified = classify_error(Exception("max fee per gas less than block base fee"))
        assert classified.category == ErrorCategory.GAS
        assert classified.message == "Transaction failed due to gas estimation. Please try again."

    def test_simulation_not_ready(self):
        classified = classify_error(StaleSimulationError())
        assert classified.category == ErrorCategory.NOT_READY
        assert classified.message == (
            "System is preparing the transaction. Please wait a moment and try again."
        )

    def test_generic_failure(self):
        classified = classify_error(Exception("Swap failed"))
        assert classified.category == ErrorCategory.FAILED
        assert classified.message == GENERIC_FAILURE_MESSAGE

    def test_short_message_passes_through(self):
        classified = classify_error(Exception("Vault is paused"))
        assert classified.category == ErrorCategory.PASSTHROUGH
        assert classified.message == "Vault is paused"

    def test_long_message_is_hidden(self):
        classified = classify_error(Exception("x" * 150))
        assert classified.category == ErrorCategory.UNKNOWN
        assert classified.message == GENERIC_FAILURE_MESSAGE

    def test_error_prefixed_message_is_hidden(self):
        assert format_transaction_error(Exception("Error: something odd")) == GENERIC_FAILURE_MESSAGE

    def test_empty_message(self):
        assert format_transaction_error(Exception()) == GENERIC_FAILURE_MESSAGE

    def test_custom_rule_list(self):
        classified = classify_error(Exception("Vault is paused"), rules=())
        assert classified.category == ErrorCategory.UNKNOWN
