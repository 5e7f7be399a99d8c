"""Custom exception types for domain and API layers."""


class AppError(Exception):
    """Base app exception."""

    status_code = 500

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Validation failure for user input or provider payloads."""

    status_code = 400


class AuthenticationError(AppError):
    """Missing or invalid credentials, including webhook signatures."""

    status_code = 401


class NotFoundError(AppError):
    """Draft, subscription or account does not exist for the caller."""

    status_code = 404


class ConflictError(AppError):
    """Requested state transition is not allowed from the current state."""

    status_code = 409


class ExternalServiceError(AppError):
    """External integration call failure (unreachable, timed out or rejected)."""

    status_code = 502


class InternalError(AppError):
    """Unexpected failure inside the service."""
