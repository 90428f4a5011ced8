"""Error taxonomy for the messaging core.

Every error carries the HTTP status it maps to and a short machine code.
The HTTP layer renders them through a single exception handler; the
WebSocket handler turns them into ``error`` events on the offending
connection only.
"""


class MessagingError(Exception):
    """Base exception for messaging errors."""
    code = "messaging_error"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(MessagingError):
    """Raised for empty payloads, malformed ids or oversized content."""
    code = "validation_error"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class MediaTooLargeError(ValidationError):
    """Raised when an upload exceeds the configured size limit."""
    code = "media_too_large"

    def __init__(self, message: str):
        super().__init__(message)
        self.status_code = 413


class AuthorizationError(MessagingError):
    """Raised when acting on a conversation one is not part of.

    The reason is kept for logging; callers only ever see "Forbidden".
    """
    code = "forbidden"

    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__("Forbidden", status_code=403)


class NotFoundError(MessagingError):
    """Raised when a user, community or message does not exist."""
    code = "not_found"

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class PersistenceError(MessagingError):
    """Raised when the message store is unreachable or times out."""
    code = "persistence_error"

    def __init__(self, message: str = "Message could not be stored"):
        super().__init__(message, status_code=503)


class TransportError(MessagingError):
    """Raised when a connection drops mid-operation. Never surfaced to clients."""
    code = "transport_error"

    def __init__(self, message: str = "Connection lost"):
        super().__init__(message, status_code=500)
