"""Failure taxonomy shared by the sync engine, storage layer and HTTP surface."""


class BridgeFlowError(Exception):
    """Base exception for bridge flow tracker errors."""


class RpcError(BridgeFlowError):
    """Raised when the ledger is unreachable or returns a malformed response."""


class StorageError(BridgeFlowError):
    """Raised when a database read or write fails."""


class ValidationError(BridgeFlowError):
    """Raised when request parameters are malformed or out of range."""


class AggregationInvariantViolation(BridgeFlowError):
    """Raised when a transaction would be folded into the buckets more than once."""
