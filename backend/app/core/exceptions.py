"""Domain errors raised by services and translated to HTTP responses by routes."""


class PrintBridgeError(Exception):
    """Base class for errors surfaced to API callers."""


class NotFound(PrintBridgeError):
    """Raised when a printer, job or user does not exist."""


class InvalidState(PrintBridgeError):
    """Raised when an entity is in a state that forbids the requested operation."""


class Unauthorized(PrintBridgeError):
    """Raised when a credential cannot be resolved to an active user."""
