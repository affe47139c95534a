"""
Exception hierarchy for the Coda explorer indexer.

Typed exceptions let the scheduler tell transient failures (node down,
database hiccup, half-imported fork) apart from fatal startup problems.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class ExplorerError(Exception):
    """Base exception for all indexer errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the next scheduled pass may succeed
    """

    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if recoverable is not None:
            self.recoverable = recoverable


# ==================== Node Errors ====================


class NodeError(ExplorerError):
    """Raised when talking to the upstream node fails."""
    recoverable = True  # Node outages are transient from our point of view


class NodeTransportError(NodeError):
    """Raised on timeouts, refused connections and non-2xx responses."""
    pass


class NodeResponseError(NodeError):
    """Raised when the node answers with a malformed or error payload."""
    pass


# ==================== Store Errors ====================


class StoreError(ExplorerError):
    """Raised when ledger store operations fail."""
    pass


class DatabaseError(StoreError):
    """Raised when the database driver reports a failure."""
    recoverable = True


class ChainInconsistencyError(StoreError):
    """Raised when a store operation would break a chain invariant.

    Examples: promoting a block that is not stored yet, or deleting a block
    that other rows still depend on. A later pass is expected to fix it.
    """
    recoverable = True


# ==================== Export Errors ====================


class BlockExportError(ExplorerError):
    """Raised when a single block could not be exported."""

    def __init__(
        self,
        message: str,
        state_hash: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.state_hash = state_hash


# ==================== Configuration & Initialization Errors ====================


class ConfigurationError(ExplorerError):
    """Raised when indexer configuration is invalid."""
    recoverable = False


class InitializationError(ExplorerError):
    """Raised when the indexer cannot start (e.g. database unreachable)."""
    recoverable = False


# ==================== Utility Functions ====================


def is_recoverable_error(exc: BaseException) -> bool:
    """Check if an exception represents a recoverable error.

    Args:
        exc: The exception to check

    Returns:
        True if the next scheduled pass may succeed
    """
    if isinstance(exc, ExplorerError):
        return exc.recoverable

    recoverable_types = (
        ConnectionError,
        TimeoutError,
        OSError,
    )
    return isinstance(exc, recoverable_types)


def get_error_context(exc: BaseException) -> Dict[str, Any]:
    """Extract error context from an exception for logging.

    Args:
        exc: The exception to extract context from

    Returns:
        Dictionary containing error type, message, and any additional details
    """
    context: Dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
        "recoverable": is_recoverable_error(exc),
    }

    if isinstance(exc, ExplorerError) and exc.details:
        context["details"] = exc.details

    if isinstance(exc, BlockExportError):
        context["state_hash"] = exc.state_hash

    if exc.__cause__ is not None:
        context["cause"] = f"{type(exc.__cause__).__name__}: {exc.__cause__}"

    return context
