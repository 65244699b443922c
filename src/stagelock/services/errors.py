from __future__ import annotations


class RemoteStateError(RuntimeError):
    """Raised when the remote book cannot be read within the call timeout."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(f"{operation} failed: {reason}")
        self.operation = operation
        self.reason = reason
