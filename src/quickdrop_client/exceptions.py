class DropClientError(Exception):
    """Base class."""

    status_code = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class InvalidInputError(DropClientError):
    """Invalid request."""
    status_code = 400


class NotFoundError(DropClientError):
    """Not found."""
    status_code = 404


class DropNotFoundError(NotFoundError):
    """Drop not found."""


class FileNotFoundInCatalogError(NotFoundError):
    """File not found."""


class StateConflictError(DropClientError):
    """Operation is not valid in the current state."""
    status_code = 409


class GoneError(DropClientError):
    """Link is no longer available."""
    status_code = 410


class ExpiredError(GoneError):
    """Expired."""


class AlreadyConsumedError(GoneError):
    """Already consumed."""


class PayloadUnavailableError(GoneError):
    """Download unavailable."""


class RateLimitedError(DropClientError):
    """Too many requests. Try again later."""
    status_code = 429


class AllocationExhaustedError(DropClientError):
    """Unable to allocate token."""


class StorageUnavailableError(DropClientError):
    """Storage backend unavailable."""


class DatabaseError(StorageUnavailableError):
    pass


class BlobStoreError(StorageUnavailableError):
    pass


class BlobNotFoundError(BlobStoreError):
    status_code = 404


class MinioError(BlobStoreError):
    pass
