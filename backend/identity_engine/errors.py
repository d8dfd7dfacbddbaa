"""Error taxonomy shared by the matcher, store and coordinator."""

from __future__ import annotations


class IdentityEngineError(RuntimeError):
    """Base exception for identity resolution failures."""

    code = "IDENTITY_ENGINE_ERROR"


class ValidationError(IdentityEngineError):
    """Raised when batch input is malformed; no mutation has happened."""

    code = "VALIDATION_ERROR"


class NotFoundError(IdentityEngineError, KeyError):
    """Raised when an operation references an identity that does not exist."""

    code = "NOT_FOUND"

    def __init__(self, identity_id: str, message: str | None = None) -> None:
        self.identity_id = identity_id
        super().__init__(message or f"Identity '{identity_id}' not found")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message.
        return str(self.args[0]) if self.args else ""


class PersistenceError(IdentityEngineError):
    """Raised when an auxiliary write (e.g. a thumbnail upload) fails."""

    code = "PERSISTENCE_ERROR"


class InternalError(IdentityEngineError):
    """Raised when a commit fails unexpectedly; the store is left unchanged."""

    code = "INTERNAL_ERROR"
