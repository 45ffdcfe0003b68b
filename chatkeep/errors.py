"""Shared error types.

Centralised here so the store, the inference client, the orchestrator and
the API routers can all raise and catch the same classes without importing
each other.
"""

from typing import Optional


class ChatkeepError(Exception):
    """Base class for every error raised by chatkeep."""


# ============================================================
# Precondition errors: raised before any side effect
# ============================================================

class PreconditionError(ChatkeepError):
    """A call was rejected because its preconditions do not hold."""


class NotAuthenticatedError(PreconditionError):
    """No user is signed in."""


class ProviderNotConfiguredError(PreconditionError):
    """The user has not selected an inference provider."""


class GenerationInProgressError(PreconditionError):
    """A generation is already running for this conversation."""


class EmptyMessageError(PreconditionError):
    """The message text is empty or only whitespace."""


class RegenerationNotAllowedError(PreconditionError):
    """The conversation has no assistant answer that can be regenerated."""


class ConversationNotFoundError(PreconditionError):
    """The conversation does not exist or belongs to another user."""


# ============================================================
# Inference errors
# ============================================================

class InferenceError(ChatkeepError):
    """Base class for failures of the inference client."""


class TransportError(InferenceError):
    """Network failure or a non-success HTTP status.

    Attributes:
        status_code: HTTP status when the server answered, else None.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StructuralError(InferenceError):
    """The server answered successfully but the body had an unexpected shape."""


class CredentialMissingError(InferenceError):
    """The provider lacks the credential or endpoint it needs to be called."""


# ============================================================
# Storage errors
# ============================================================

class StorageError(ChatkeepError):
    """The local database failed to read or write."""
