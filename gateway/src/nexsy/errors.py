from __future__ import annotations


class ChatError(Exception):
    """Base error carrying a short, client-safe message."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    code = "invalid_request"


class NotFoundError(ChatError):
    code = "not_found"


class ConflictError(ChatError):
    code = "conflict"


class PersistenceError(ChatError):
    code = "persistence_error"


class AuthenticationError(ChatError):
    code = "unauthorized"


class InvalidToken(AuthenticationError):
    pass


class InvalidTransition(ChatError):
    code = "invalid_transition"
