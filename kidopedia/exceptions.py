class KidopediaError(Exception):
    """Base exception for the dictionary core."""
    pass


class PersistenceError(KidopediaError):
    """A local store read or write failed (disk full, corruption, schema)."""
    pass


class InputError(ValueError):
    """Invalid caller-supplied data, e.g. a profile age outside 2-18."""
    pass


class RemoteError(KidopediaError):
    """Base class for failures talking to a remote collaborator."""
    pass


class TransientNetworkError(RemoteError):
    """A remote call failed in a way that may succeed if retried."""
    pass


class RemoteTimeoutError(TransientNetworkError):
    """A remote call exceeded its wall-clock ceiling."""
    pass


class RemoteConnectionError(TransientNetworkError):
    """The remote endpoint could not be reached."""
    pass


class RemoteServiceError(RemoteError):
    """The remote answered with an unexpected status."""

    def __init__(self, message, status_code=None, *args):
        super().__init__(message, *args)
        self.status_code = status_code

    def __str__(self):
        base = super().__str__()
        return f"{base} (HTTP {self.status_code})" if self.status_code else base


class MalformedResponseError(RemoteError):
    """A remote payload did not match the expected shape."""
    pass


class SyncFailedError(KidopediaError):
    """The word sync ended in the failed state; the message is persisted too."""
    pass
