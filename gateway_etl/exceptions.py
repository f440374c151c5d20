"""Exception hierarchy for the gateway ETL.

All exceptions carry a human-readable message plus a structured ``context``
dict so they can be logged with structlog without string parsing.

Usage:
    from gateway_etl.exceptions import MissingFieldError, StorageError

    try:
        record = normalizer.normalize(event)
    except MissingFieldError as e:
        logger.error("event_dropped", field=e.field, context=e.context)
"""

from __future__ import annotations

from typing import Any


class GatewayETLError(Exception):
    """Base exception for all gateway ETL errors.

    Attributes:
        message: Human-readable error message
        context: Additional context for debugging (dict)
        original_error: Original exception if wrapped
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Format exception with context for logging."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        if self.original_error:
            base = f"{base} [caused by: {type(self.original_error).__name__}]"
        return base

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, context={self.context!r})"


# =============================================================================
# Normalization Errors
# =============================================================================


class NormalizationError(GatewayETLError):
    """Base class for errors turning a raw gateway event into a record."""

    def __init__(
        self,
        message: str,
        *,
        log_id: int | None = None,
        event_kind: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if log_id is not None:
            context["log_id"] = log_id
        if event_kind:
            context["event_kind"] = event_kind
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.log_id = log_id
        self.event_kind = event_kind


class UnknownKindError(NormalizationError):
    """Raised for a module or event tag the ETL does not recognize.

    Never fatal: the event is skipped and counted.
    """

    def __init__(self, message: str, *, module: str | None = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if module:
            context["module"] = module
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.module = module


class MissingFieldError(NormalizationError):
    """Raised when a field required by a known event kind is absent.

    The event is dropped: a partial record would corrupt lifecycle
    reconstruction.
    """

    def __init__(self, field: str, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        context["field"] = field
        kwargs["context"] = context
        super().__init__(f"Missing required field '{field}'", **kwargs)
        self.field = field


class InvalidFieldError(NormalizationError):
    """Raised when a required field is present but semantically invalid."""

    def __init__(self, field: str, reason: str, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        context["field"] = field
        context["reason"] = reason
        kwargs["context"] = context
        super().__init__(f"Invalid field '{field}': {reason}", **kwargs)
        self.field = field
        self.reason = reason


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(GatewayETLError):
    """Base class for storage failures.

    ``transient`` tells the caller whether redelivering the same write can
    succeed later.
    """

    transient: bool = False

    def __init__(self, message: str, *, operation: str | None = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if operation:
            context["operation"] = operation
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.operation = operation


class TransientStorageError(StorageError):
    """Connection loss, timeout or lock contention. The caller may retry."""

    transient = True


class PermanentStorageError(StorageError):
    """Constraint or data error unrelated to the dedup key. Surfaced to the operator."""


class EpochUnavailableError(StorageError):
    """Raised when the gateway epoch cannot be computed at startup."""


# =============================================================================
# Migration Errors
# =============================================================================


class MigrationError(GatewayETLError):
    """Base class for v1 to v2 schema migration failures."""

    def __init__(self, message: str, *, federation_id: str | None = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if federation_id:
            context["federation_id"] = federation_id
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.federation_id = federation_id


class CursorCorruptionError(MigrationError):
    """Raised when a migration cursor is inconsistent. Needs manual intervention."""


class MigrationNotCompleteError(MigrationError):
    """Raised when v1 rows are dropped before the migration has completed."""


# =============================================================================
# Transport Errors
# =============================================================================


class GatewayTransportError(GatewayETLError):
    """Raised when the gateway HTTP API cannot be reached or answers badly."""

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if status_code is not None:
            context["status_code"] = status_code
        kwargs["context"] = context
        super().__init__(message, **kwargs)
        self.status_code = status_code


__all__ = [
    "GatewayETLError",
    # Normalization
    "NormalizationError",
    "UnknownKindError",
    "MissingFieldError",
    "InvalidFieldError",
    # Storage
    "StorageError",
    "TransientStorageError",
    "PermanentStorageError",
    "EpochUnavailableError",
    # Migration
    "MigrationError",
    "CursorCorruptionError",
    "MigrationNotCompleteError",
    # Transport
    "GatewayTransportError",
]
