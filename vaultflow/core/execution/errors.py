"""
Error Classification

Typed errors raised by the vault transaction pipeline, plus the ordered
rule list that turns any signer/node failure into a user-facing message.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Tuple


class ErrorCategory(str, Enum):
    """Categories shown to the user, in classification priority order."""

    CANCELLED = "cancelled"                  # Wallet prompt rejected
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REVERTED = "reverted"                    # On-chain or simulated revert
    NETWORK = "network"                      # Node/RPC connectivity
    GAS = "gas"                              # Gas or fee estimation
    NOT_READY = "not_ready"                  # Simulation still loading or stale
    FAILED = "failed"                        # Generic failure wording
    PASSTHROUGH = "passthrough"              # Short, readable raw message
    UNKNOWN = "unknown"

    # Raised before anything is sent; never produced by the classifier
    INVALID_AMOUNT = "invalid_amount"
    PLANNING = "planning"
    ALLOWANCE_RACE = "allowance_race"


class RecoverableError(Exception):
    """Errors the user can resolve by retrying the same flow."""

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class UnrecoverableError(Exception):
    """Errors that end the current attempt."""

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class UserCancelledError(RecoverableError):
    """The user rejected a wallet prompt."""

    category = ErrorCategory.CANCELLED

    def __init__(self, message: str = "User rejected the request"):
        super().__init__(message)


class InsufficientFundsError(UnrecoverableError):
    """Wallet cannot fund the requested amount."""

    category = ErrorCategory.INSUFFICIENT_FUNDS

    def __init__(
        self,
        message: str = "Insufficient balance",
        required: Optional[int] = None,
        available: Optional[int] = None,
        token: Optional[str] = None,
    ):
        super().__init__(message)
        self.required = required
        self.available = available
        self.token = token


class InvalidAmountError(UnrecoverableError):
    """Amount missing, malformed or not positive."""

    category = ErrorCategory.INVALID_AMOUNT


class PlanningError(UnrecoverableError):
    """Operations could not be turned into a bundle."""

    category = ErrorCategory.PLANNING


class StaleSimulationError(PlanningError):
    """An operation references a vault or token the snapshot does not know."""

    category = ErrorCategory.NOT_READY

    def __init__(self, message: str = "Simulation state is not ready for this vault", address: Optional[str] = None):
        super().__init__(message)
        self.address = address


class SimulationError(RecoverableError):
    """Building the simulation snapshot failed."""

    category = ErrorCategory.NOT_READY

    def __init__(self, message: str = "Simulation failed", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class AllowanceRaceError(RecoverableError):
    """Allowance still not visible to the node after the retry."""

    category = ErrorCategory.ALLOWANCE_RACE


class TransactionRevertedError(UnrecoverableError):
    """Transaction reverted on-chain."""

    category = ErrorCategory.REVERTED

    def __init__(self, message: str = "Transaction reverted", tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class RpcError(RecoverableError):
    """JSON-RPC transport or node error."""

    category = ErrorCategory.NETWORK

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class GasEstimationError(UnrecoverableError):
    """eth_estimateGas rejected the main transaction."""

    category = ErrorCategory.GAS


class ExecutionError(UnrecoverableError):
    """Anything else that ends an attempt."""

    category = ErrorCategory.FAILED


# ============================================================================
# Cancellation heuristic
# ============================================================================

CANCELLATION_PHRASES: Tuple[str, ...] = (
    "user rejected",
    "user denied",
    "user cancelled",
    "cancelled",
    "rejected",
    "denied",
    "aborted",
    "action_cancelled",
    "4001",
)
CANCELLATION_CODES = frozenset({4001, 4900})
CANCELLATION_CODE_NAMES = frozenset({"ACTION_REJECTED", "USER_REJECTED"})

_MAX_CAUSE_DEPTH = 5


def _payload_texts(payload: Any) -> List[str]:
    if isinstance(payload, dict):
        texts = []
        for key in ("message", "reason", "shortMessage", "details"):
            if payload.get(key):
                texts.append(str(payload[key]))
        if "data" in payload and isinstance(payload["data"], (dict, str)):
            texts.extend(_payload_texts(payload["data"]))
        return texts
    if payload is None:
        return []
    return [str(payload)]


def _payload_codes(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        codes = [payload["code"]] if "code" in payload else []
        if isinstance(payload.get("data"), dict):
            codes.extend(_payload_codes(payload["data"]))
        return codes
    return []


def _error_chain(error: Any) -> Iterable[Any]:
    seen = set()
    current = error
    depth = 0
    while current is not None and id(current) not in seen and depth < _MAX_CAUSE_DEPTH:
        seen.add(id(current))
        yield current
        depth += 1
        current = getattr(current, "__cause__", None) or getattr(current, "__context__", None)


def error_texts(error: Any) -> List[str]:
    """Every piece of human text attached to an error, outermost first."""
    texts: List[str] = []
    for item in _error_chain(error):
        if isinstance(item, BaseException):
            texts.append(str(item))
            for attr in ("message", "reason", "short_message", "details"):
                value = getattr(item, attr, None)
                if isinstance(value, str) and value:
                    texts.append(value)
            for arg in item.args:
                if isinstance(arg, dict):
                    texts.extend(_payload_texts(arg))
        else:
            texts.extend(_payload_texts(item))
    return texts


def error_codes(error: Any) -> List[Any]:
    codes: List[Any] = []
    for item in _error_chain(error):
        if isinstance(item, BaseException):
            code = getattr(item, "code", None)
            if code is not None:
                codes.append(code)
            for arg in item.args:
                codes.extend(_payload_codes(arg))
        else:
            codes.extend(_payload_codes(item))
    return codes


def _code_is_cancellation(code: Any) -> bool:
    if isinstance(code, bool):
        return False
    if isinstance(code, int):
        return code in CANCELLATION_CODES
    text = str(code).strip()
    if text.upper() in CANCELLATION_CODE_NAMES:
        return True
    return text.isdigit() and int(text) in CANCELLATION_CODES


def is_user_cancellation(error: Any) -> bool:
    """Best-effort match of signer rejection across messages, reasons and codes."""
    if isinstance(error, UserCancelledError):
        return True
    if any(_code_is_cancellation(code) for code in error_codes(error)):
        return True
    lowered = " ".join(error_texts(error)).lower()
    return any(phrase in lowered for phrase in CANCELLATION_PHRASES)


# ============================================================================
# Ordered classifier
# ============================================================================

GENERIC_FAILURE_MESSAGE = "Transaction failed. Please try again."
PASSTHROUGH_MAX_LENGTH = 100


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    message: str

    @property
    def is_cancellation(self) -> bool:
        return self.category == ErrorCategory.CANCELLED


@dataclass(frozen=True)
class ErrorRule:
    """``predicate(error, text)`` decides; ``render(text)`` builds the message."""
    category: ErrorCategory
    predicate: Callable[[Any, str], bool]
    render: Callable[[str], str]


def _contains(*patterns: str) -> Callable[[Any, str], bool]:
    def predicate(_error: Any, text: str) -> bool:
        lowered = text.lower()
        return any(p in lowered for p in patterns)
    return predicate


def _fixed(message: str) -> Callable[[str], str]:
    return lambda _text: message


def _insufficient_message(text: str) -> str:
    if any(marker in text for marker in ("Breakdown:", "Available:", "Requested:")):
        return text
    return "Insufficient balance. Please check your available funds."


def _is_short_readable(_error: Any, text: str) -> bool:
    return bool(text) and len(text) < PASSTHROUGH_MAX_LENGTH and "Error: " not in text


ERROR_RULES: Tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorCategory.CANCELLED,
        lambda error, _text: is_user_cancellation(error),
        _fixed("Transaction cancelled."),
    ),
    ErrorRule(
        ErrorCategory.INSUFFICIENT_FUNDS,
        _contains("insufficient", "balance too low"),
        _insufficient_message,
    ),
    ErrorRule(
        ErrorCategory.REVERTED,
        _contains("reverted", "revert"),
        _fixed("Transaction was reverted. Please try again with a different amount or check your balance."),
    ),
    ErrorRule(
        ErrorCategory.NETWORK,
        _contains("network", "rpc", "fetch", "timeout", "connection"),
        _fixed("Network error. Please check your connection and try again."),
    ),
    ErrorRule(
        ErrorCategory.GAS,
        _contains("gas", "fee", "out of gas"),
        _fixed("Transaction failed due to gas estimation. Please try again."),
    ),
    ErrorRule(
        ErrorCategory.NOT_READY,
        _contains("simulation", "bundler", "not ready"),
        _fixed("System is preparing the transaction. Please wait a moment and try again."),
    ),
    ErrorRule(
        ErrorCategory.FAILED,
        _contains("transaction failed", "failed"),
        _fixed(GENERIC_FAILURE_MESSAGE),
    ),
    ErrorRule(
        ErrorCategory.PASSTHROUGH,
        _is_short_readable,
        lambda text: text,
    ),
)


def primary_message(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, BaseException):
        message = getattr(error, "message", None)
        if isinstance(message, str) and message:
            return message
        if error.args and isinstance(error.args[0], dict):
            texts = _payload_texts(error.args[0])
            if texts:
                return texts[0]
        return str(error)
    if isinstance(error, dict):
        texts = _payload_texts(error)
        return texts[0] if texts else json.dumps(error, sort_keys=True)
    return str(error)


def classify_error(error: Any, rules: Tuple[ErrorRule, ...] = ERROR_RULES) -> ClassifiedError:
    """Run ``rules`` in order and return the first match."""
    text = primary_message(error)
    for rule in rules:
        if rule.predicate(error, text):
            return ClassifiedError(category=rule.category, message=rule.render(text))
    return ClassifiedError(category=ErrorCategory.UNKNOWN, message=GENERIC_FAILURE_MESSAGE)


def format_transaction_error(error: Any) -> str:
    return classify_error(error).message
