"""Error taxonomy for the analytics engine.

Only :class:`EntityNotFound` is allowed to reach callers of the public
analytics API; every other failure is caught, logged and compensated.
"""
from typing import Optional


class AnalyticsError(Exception):
    """Base class for analytics engine errors."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.entity_id = entity_id


class EntityNotFound(AnalyticsError, LookupError):
    """Raised when the entity id itself is unknown to the datastore.

    Lacking data is not an error: an entity with zero records yields a result
    with ``has_minimum_data=False`` instead.
    """

    def __init__(self, entity_id: str, message: Optional[str] = None):
        super().__init__(message or f"Entity '{entity_id}' not found", entity_id=entity_id)


class TransientAnalyzerFailure(AnalyticsError):
    """A single analyzer call failed; its contribution is replaced by an empty list."""

    def __init__(self, analyzer: str, entity_id: Optional[str], cause: BaseException):
        super().__init__(f"{analyzer} failed for entity '{entity_id}': {cause}", entity_id=entity_id)
        self.analyzer = analyzer
        self.cause = cause


class PersistenceFailure(AnalyticsError):
    """Reading or writing the key/value persistence backend failed."""

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Persistence {operation} failed for key '{key}'{detail}")
        self.operation = operation
        self.key = key
        self.cause = cause


class ProfileValidationError(AnalyticsError):
    """A persisted profile record does not match the profile schema."""


class ConfigurationError(AnalyticsError, ValueError):
    """An analytics configuration update, import or preset is invalid."""


__all__ = [
    "AnalyticsError",
    "ConfigurationError",
    "EntityNotFound",
    "PersistenceFailure",
    "ProfileValidationError",
    "TransientAnalyzerFailure",
]
