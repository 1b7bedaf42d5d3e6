"""
Standardized Error Handling for Thingfish
=========================================

This module provides the exception hierarchy shared by every datastore,
metastore and the object store coordinator, plus helpers for converting
foreign exceptions and tracing store operations.

Every error carries a ``context`` dict and a ``status`` attribute holding the
HTTP status a transport layer should answer with:

    ThingfishError                  500
      ConfigurationError            500
      NotImplementedOperationError  501
      InvalidObjectIdError          400
      ObjectNotFoundError           404
      StoreIntegrityError           500
      LockTimeoutError              503
      DatastoreError                500
        QuotaExceededError          413
      MetastoreError                500
        ProtectedPropertyError      403

Errors never log themselves; callers decide how failures are presented.
"""

import functools
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Type, Union

logger = logging.getLogger(__name__)


class ThingfishError(Exception):
    """Base exception for all storage-related errors."""

    status = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        super().__init__(message)


class ConfigurationError(ThingfishError, ValueError):
    """Raised when a backend is configured with bad options."""

    pass


class NotImplementedOperationError(ThingfishError, NotImplementedError):
    """Raised when a backend fails to provide a required operation."""

    status = 501


class InvalidObjectIdError(ThingfishError, ValueError):
    """Raised when an object id can't be used to address storage."""

    status = 400


class ObjectNotFoundError(ThingfishError):
    """Raised when an object is present in neither store."""

    status = 404


class StoreIntegrityError(ThingfishError):
    """Raised when blob data and metadata can no longer be kept in step."""

    pass


class LockTimeoutError(ThingfishError):
    """Raised when a store lock could not be acquired in time. Retryable."""

    status = 503


class DatastoreError(ThingfishError):
    """Raised when blob storage operations fail."""

    pass


class QuotaExceededError(DatastoreError):
    """Raised when a write would exceed the datastore's configured size."""

    status = 413


class MetastoreError(ThingfishError):
    """Raised when metadata operations fail."""

    pass


class ProtectedPropertyError(MetastoreError):
    """Raised when a caller tries to set a property reserved for the system."""

    status = 403


def not_implemented(instance: Any, operation: str) -> NotImplementedOperationError:
    """Build the error raised by abstract operations left unimplemented."""
    classname = type(instance).__name__
    return NotImplementedOperationError(
        f"{classname} does not implement required method {operation!r}",
        {"class": classname, "operation": operation},
    )


def with_error_handling(
    error_type: Type[ThingfishError] = ThingfishError,
    context: Optional[Dict[str, Any]] = None,
):
    """
    Decorator that converts foreign exceptions into ``error_type``.

    ThingfishErrors pass through untouched; anything else is wrapped and
    chained so the original traceback is preserved.

    Args:
        error_type: Type of ThingfishError to raise
        context: Additional context to include in the error
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ThingfishError:
                raise
            except Exception as e:
                error_context = (context or {}).copy()
                error_context.update(
                    {
                        "function": func.__name__,
                        "original_error": str(e),
                        "original_error_type": type(e).__name__,
                    }
                )
                raise error_type(f"Error in {func.__name__}: {e}", error_context) from e

        return wrapper

    return decorator


@contextmanager
def store_operation_context(
    operation: str, log: Optional[logging.Logger] = None, **context
):
    """
    Context manager that traces a store operation at debug level.

    Args:
        operation: Description of the operation
        log: Logger to trace with (defaults to this module's logger)
        **context: Additional context for the log records
    """
    log = log or logger
    log.debug(f"Starting store operation: {operation}", extra=context)
    start_time = time.time()

    try:
        yield
    except Exception as e:
        duration = time.time() - start_time
        log.debug(
            f"Store operation failed: {operation} after {duration:.3f}s - "
            f"{type(e).__name__}: {e}",
            extra=context,
        )
        raise

    duration = time.time() - start_time
    log.debug(f"Store operation completed: {operation} ({duration:.3f}s)", extra=context)


def validate_directory(path: Union[str, Path, None], option: str) -> Path:
    """
    Validate and create a storage directory.

    Args:
        path: Directory to validate
        option: Name of the configuration option, for error messages

    Returns:
        Validated Path object

    Raises:
        ConfigurationError: If the path is missing or can't be created
    """
    if path is None or str(path) == "":
        raise ConfigurationError(f"{option} is required", {"option": option})

    directory = Path(path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            f"Unable to create {option} {directory}: {e}",
            {"option": option, "path": str(directory)},
        ) from e

    if not directory.is_dir():
        raise ConfigurationError(
            f"{option} {directory} is not a directory",
            {"option": option, "path": str(directory)},
        )

    return directory
