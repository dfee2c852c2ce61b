"""
Error taxonomy for the conversation subsystem.

Every error carries a stable ``code`` that is sent to clients, over HTTP
(``{"detail": ..., "code": ...}``) and over the live channel (``error`` event).
"""

from typing import Optional


class ChatError(Exception):

    code = "chat_error"
    status_code = 400

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class AuthenticationError(ChatError):
    """No identity or an invalid identity on a connection. The connection is closed."""

    code = "unauthenticated"
    status_code = 401


class ChatPermissionError(ChatError):
    """Caller is not a participant of the target conversation. The connection stays open."""

    code = "forbidden"
    status_code = 403


class NotFoundError(ChatError):

    code = "not_found"
    status_code = 404


class TransientIOError(ChatError):
    """The document store is temporarily unavailable. Never retried silently."""

    code = "transient_io"
    status_code = 503
