class AuthException(Exception):
    """Custom exception for authentication errors."""
    pass


class ApiError(Exception):
    """A request to the SIM operator API failed or returned an unusable body."""

    def __init__(self, message, status=None, endpoint=None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.endpoint = endpoint


class StoreError(Exception):
    """The local store or a remote mirror rejected a read or write."""
    pass


class ValidationError(ValueError):
    pass


class AccountLimitReached(ValidationError):
    pass


class OperationCancelled(Exception):
    """Work was aborted through its cancellation token."""
    pass
