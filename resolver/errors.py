"""
Error taxonomy for the resolver.

Adapters raise these; the orchestrator turns them into TransitionResult
failures so callers always get a structured (kind + context) report.

Transient errors carry retryable=True and are retried by call_with_retry.
Logic errors (reverts, bad secrets, bad script parameters) never are.
"""

from typing import Any, Dict


class ResolverError(Exception):
    """Base class for every error the resolver surfaces."""
    kind = "resolver_error"
    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context = context
        # PendingTx for a transaction already broadcast when this was raised
        self.pending = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
            "tx_ref": self.pending.tx_ref if self.pending is not None else None,
        }


def _jsonable(value):
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


# =============================================================================
# Validation
# =============================================================================

class ValidationError(ResolverError):
    """Missing or malformed input. Raised before any chain is touched."""
    kind = "validation_error"


class InvalidTransition(ValidationError):
    kind = "invalid_transition"


class OutOfRange(ValidationError):
    kind = "out_of_range"


class AddressFormatError(ValidationError):
    kind = "address_format_error"


class InvalidScriptParameters(ResolverError):
    kind = "invalid_script_parameters"


class SecretMismatch(ResolverError):
    kind = "secret_mismatch"


class ConfigurationError(ResolverError):
    kind = "configuration_error"


class InternalError(ResolverError):
    """An unexpected exception, reported in the same shape as the rest."""
    kind = "internal_error"


# =============================================================================
# Chain errors
# =============================================================================

class InsufficientFunds(ResolverError):
    kind = "insufficient_funds"


class NoUTXOs(ResolverError):
    kind = "no_utxos"


class RevertedExecution(ResolverError):
    kind = "reverted_execution"

    def __init__(self, reason: str = "", **context):
        super().__init__(f"Execution reverted: {reason}" if reason else "Execution reverted",
                         reason=reason, **context)
        self.reason = reason


class BroadcastRejected(ResolverError):
    kind = "broadcast_rejected"

    def __init__(self, reason: str = "", **context):
        super().__init__(f"Broadcast rejected: {reason}" if reason else "Broadcast rejected",
                         reason=reason, **context)
        self.reason = reason


class UnsupportedOperation(ResolverError):
    kind = "unsupported_operation"


class Timeout(ResolverError):
    kind = "timeout"
    retryable = True


class ConfirmationTimeout(Timeout):
    # The poll loop is already the bounded wait
    kind = "confirmation_timeout"
    retryable = False


class RpcUnavailable(ResolverError):
    kind = "rpc_unavailable"
    retryable = True


# =============================================================================
# Store errors
# =============================================================================

class OrderNotFound(ResolverError):
    kind = "order_not_found"


class StoreUnavailable(ResolverError):
    kind = "store_unavailable"
