"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class MapManagerError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(MapManagerError):
    """Raised for issues related to configuration loading or validation."""


class StorageUnavailableError(MapManagerError):
    """Raised when the storage root is missing, unmounted or not writable."""


class TransferError(MapManagerError):
    """Raised when a network transfer fails after all retry attempts."""


class ManifestParseError(MapManagerError):
    """
    Raised when a manifest or a feature descriptor is malformed or lacks
    required fields.
    """
