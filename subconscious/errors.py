"""
Exceptions for the subconscious sync engine.
"""

EXIT_OK = 0
EXIT_NON_BLOCKING = 1
EXIT_BLOCKING = 2


class SubconsciousError(Exception):
    """Base exception for sync operations."""

    exit_code = EXIT_NON_BLOCKING


class ConfigurationError(SubconsciousError):
    """Raised when required configuration is missing or malformed."""


class InvalidAgentIdError(ConfigurationError):
    """Raised when an explicitly supplied agent id has the wrong shape.

    This is the only error that halts prompt processing in the host.
    """

    exit_code = EXIT_BLOCKING


class TransportError(SubconsciousError):
    """Raised when a request to the Letta API fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(TransportError):
    """Raised when the remote resource does not exist (404)."""


class ConversationBusyError(TransportError):
    """Raised when the conversation is still processing a previous message (409)."""


class ResolverError(SubconsciousError):
    """Raised when an agent or model cannot be resolved."""


class NoModelsAvailableError(ResolverError):
    """Raised when the server reports no models at all."""
