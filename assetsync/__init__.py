"""assetsync - export game assets and sync them to Backblaze B2."""

from .catalog import AssetCatalog
from .exceptions import (
    AssetSyncAPIError,
    AssetSyncError,
    AuthError,
    ConfigurationError,
    ConversionError,
    ItemFailure,
    NetworkError,
    ParseError,
    PersistenceError,
    RateLimitError,
    TransientIOError,
    UploadFailure,
)
from .ledger import UploadLedger
from .mapping import MappingDocument
from .workflow import AssetPipeline, UploadReport

__version__ = "0.1.0"

__all__ = [
    "AssetCatalog",
    "AssetPipeline",
    "UploadReport",
    "UploadLedger",
    "MappingDocument",
    "AssetSyncError",
    "AssetSyncAPIError",
    "AuthError",
    "ConfigurationError",
    "ConversionError",
    "ItemFailure",
    "NetworkError",
    "ParseError",
    "PersistenceError",
    "RateLimitError",
    "TransientIOError",
    "UploadFailure",
]
