"""Error taxonomy shared by every layer."""


class CardifyError(Exception):
    """Base class for all cardify errors."""


class ValidationError(CardifyError):
    """Malformed input to the scheduler or the local store. Never retried."""


class StorageError(CardifyError):
    """Local persistence failed; the caller must assume nothing changed."""


class NotFoundError(CardifyError):
    """The requested local entity does not exist."""


class RemoteError(CardifyError):
    """A Remote Gateway call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Timeout, connection failure or 5xx. Retried with backoff."""


class PermanentRemoteError(RemoteError):
    """4xx other than auth (404 gone, 409 conflict, 422 validation). Dead-lettered."""


class AuthError(RemoteError):
    """401/403. Suspends the whole sync loop until the credential changes."""
