"""Exceptions raised by the study core."""


class FlashDrillError(Exception):
    """Base class for all application errors."""


class AuthorizationError(FlashDrillError):
    """Raised when an account may not mutate a shared set."""


class CatalogValidationError(FlashDrillError, ValueError):
    """Raised when an authored word set is incomplete."""


class InvalidSessionError(FlashDrillError, ValueError):
    """Raised when a session cannot start or a phase transition is illegal."""


class RemoteStoreError(FlashDrillError):
    """Raised when the shared store is unreachable or rejects a write."""
