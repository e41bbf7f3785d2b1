class VerificationError(Exception):
    """Base error for the intake flow. Carries the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(VerificationError):
    status_code = 400


class TokenError(VerificationError):
    """Lifecycle failures. Terminal for a session: the submitter needs a new link."""


class TokenNotFound(TokenError):
    status_code = 404

    def __init__(self, message: str = "Invalid or expired link"):
        super().__init__(message)


class TokenExpired(TokenError):
    status_code = 410

    def __init__(self, message: str = "This link has expired"):
        super().__init__(message)


class TokenAlreadyCompleted(TokenError):
    status_code = 409

    def __init__(self, message: str = "This verification has already been completed"):
        super().__init__(message)


class CaptureError(VerificationError):
    status_code = 422


class PersistenceError(VerificationError):
    status_code = 500


class StepError(VerificationError):
    """A session step precondition is not met. Recoverable."""

    status_code = 409


class RemoteFetchError(PersistenceError):
    status_code = 502
