"""Exceptions raised by the asset pipeline."""


class AssetSyncError(Exception):
    """Base exception for all asset pipeline errors."""

    pass


class ConfigurationError(AssetSyncError):
    """Raised when credentials or output paths are missing or invalid.

    Raised before any network call is attempted.
    """

    pass


class AuthError(AssetSyncError):
    """Raised when authorization against the object store fails."""

    pass


class AssetSyncAPIError(AssetSyncError):
    """Raised for non-retryable object store API failures."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class TransientIOError(AssetSyncError):
    """Raised for a single-file network or disk hiccup that may be retried."""

    pass


class NetworkError(TransientIOError):
    """Raised when a request cannot reach the object store."""

    pass


class RateLimitError(TransientIOError):
    """Raised when the object store asks the client to slow down."""

    pass


class ItemFailure(AssetSyncError):
    """Raised when one resource's export or upload failed.

    The failure is isolated: the batch that owns the item keeps going.
    """

    def __init__(self, message: str, item_name: str = ""):
        super().__init__(message)
        self.item_name = item_name


class ConversionError(ItemFailure):
    """Raised when an external conversion tool fails."""

    pass


class UploadFailure(ItemFailure):
    """Raised when a file could not be uploaded after all retries."""

    pass


class ParseError(AssetSyncError):
    """Raised when mapping.json or a catalog snapshot is malformed."""

    pass


class PersistenceError(AssetSyncError):
    """Raised when the upload ledger cannot be read or written."""

    pass
