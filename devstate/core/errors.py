# devstate/core/errors.py
"""
Error taxonomy. Every error carries a stable `kind` that front ends surface unmodified.
"""

from typing import List, Optional


class DevStateError(Exception):
    """Base for all engine errors."""

    kind = "devstate"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class NotFoundError(DevStateError):
    """Missing singleton state row, lease or history entry."""

    kind = "not_found"


class ValidationError(DevStateError):
    """Candidate document (or request argument) rejected."""

    kind = "validation"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.errors:
            d["errors"] = self.errors
        return d


class ConcurrencyError(DevStateError):
    """Serialization guard could not be acquired, or an exclusive lease is held."""

    kind = "concurrency"


class ChainIntegrityError(DevStateError):
    """A history chain (or snapshot) failed link/digest verification."""

    kind = "chain_integrity"

    def __init__(self, message: str, position: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.position = position
        self.reason = reason

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.position is not None:
            d["position"] = self.position
        if self.reason is not None:
            d["reason"] = self.reason
        return d


class ConfigurationError(DevStateError):
    """Missing signing secret or schema. Fatal at startup."""

    kind = "configuration"
