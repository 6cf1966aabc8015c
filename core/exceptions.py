"""Shared exception types for core trading logic."""

from typing import List, Optional, Sequence


class TransientCollaboratorError(RuntimeError):
    """Raised when an external collaborator call fails for network/timeout reasons."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class ConfigurationError(ValueError):
    """Raised for missing credentials or invalid thresholds. Always fatal for a cycle."""

    def __init__(self, errors: Sequence[str]):
        self.errors: List[str] = [str(e) for e in errors] or ["invalid configuration"]
        super().__init__(
            f"Invalid configuration: {len(self.errors)} error(s): " + "; ".join(self.errors)
        )


class ConsistencyError(RuntimeError):
    """Local and remote position records diverge in a way a size fix cannot repair."""

    def __init__(self, symbol: str, detail: str):
        super().__init__(f"{symbol}: {detail}")
        self.symbol = symbol
        self.detail = detail


class ExecutionRejection(RuntimeError):
    """Exchange (or simulated exchange) refused an order."""

    def __init__(self, symbol: str, reason: str):
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason
