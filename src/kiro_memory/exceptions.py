"""Custom exceptions for kiro-memory.

This module defines a hierarchy of exceptions for better error classification
and handling throughout the application.
"""


class KiroMemoryError(Exception):
    """Base exception for all kiro-memory errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(KiroMemoryError):
    """Error in configuration settings."""
    pass


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: str, message: str = None):
        msg = message or f"Invalid configuration value for {key}: {value}"
        super().__init__(msg, {"key": key, "value": value})
        self.key = key
        self.value = value


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(KiroMemoryError):
    """Input validation failed."""

    def __init__(self, field: str, message: str, value: str = None):
        super().__init__(message, {"field": field, "value": value})
        self.field = field
        self.value = value


class InvalidProjectError(ValidationError):
    """Project name contains unsafe characters or is out of range."""

    def __init__(self, value: str):
        super().__init__(
            field="project",
            message="Invalid or missing project name",
            value=value,
        )


# =============================================================================
# Resource Errors
# =============================================================================


class NotFoundError(KiroMemoryError):
    """Requested record not found.

    The storage core reports missing records as None or an empty list.
    Only the HTTP edge raises this.
    """

    def __init__(self, resource_type: str, resource_id: str):
        msg = f"{resource_type} not found: {resource_id}"
        super().__init__(msg, {"type": resource_type, "id": resource_id})
        self.resource_type = resource_type
        self.resource_id = resource_id


# =============================================================================
# Degraded Capabilities
# =============================================================================


class DegradedCapabilityError(KiroMemoryError):
    """An optional subsystem is unavailable.

    Never escapes the core: callers catch it, log it and take the
    documented fallback path.
    """

    def __init__(self, capability: str, message: str = None):
        msg = message or f"Capability unavailable: {capability}"
        super().__init__(msg, {"capability": capability})
        self.capability = capability


class EmbeddingError(DegradedCapabilityError):
    """Error generating embeddings."""

    def __init__(self, message: str, provider: str = None):
        super().__init__("embeddings", message)
        self.details["provider"] = provider
        self.provider = provider


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(KiroMemoryError):
    """The storage engine rejected an operation."""
    pass


class DatabaseConnectionError(StorageError):
    """Failed to connect to database."""

    def __init__(self, db_path: str, message: str = None):
        msg = message or f"Failed to connect to database: {db_path}"
        super().__init__(msg, {"db_path": db_path})
        self.db_path = db_path


class DatabaseIntegrityError(StorageError):
    """Database integrity constraint violated."""

    def __init__(self, message: str, constraint: str = None):
        super().__init__(message, {"constraint": constraint})
        self.constraint = constraint


class MigrationError(StorageError):
    """A schema migration failed and was rolled back."""

    def __init__(self, version: int, message: str):
        super().__init__(
            f"Migration {version} failed: {message}",
            {"version": version},
        )
        self.version = version


# =============================================================================
# Maintenance Errors
# =============================================================================


class MaintenanceError(KiroMemoryError):
    """A single item of a maintenance batch failed."""

    def __init__(self, item_id, message: str):
        super().__init__(message, {"item_id": item_id})
        self.item_id = item_id


# =============================================================================
# Authentication Errors
# =============================================================================


class InvalidTokenError(KiroMemoryError):
    """Invalid worker token."""

    def __init__(self):
        super().__init__("Invalid or missing X-Worker-Token")
