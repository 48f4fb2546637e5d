"""Error handling framework for MediAlign.

Provides the exception hierarchy used across the identification pipeline
and helpers that log and wrap library exceptions into it.
"""

import inspect
import logging
from functools import wraps

logger = logging.getLogger(__name__)


# Custom Exception Hierarchy
class MediAlignError(Exception):
    """Base exception for all MediAlign-specific errors."""

    pass


class InputError(MediAlignError):
    """Caller supplied something unusable.

    Raised for missing directories/files, unknown ids and episodes that do
    not belong to the file's series. Non-fatal to a batch.
    """

    pass


class NotFoundError(InputError):
    """A series, file or episode id does not exist."""

    pass


class ExtractionError(MediAlignError):
    """Audio extraction failed.

    Raised by the extraction tool for a single segment, and by the sampler
    when every segment of a file failed.
    """

    pass


class TranscriptionError(MediAlignError):
    """Transcription engine failed for a segment."""

    pass


class MatchingError(MediAlignError):
    """Transcript scoring failed unexpectedly."""

    pass


class MetadataError(MediAlignError):
    """Metadata provider lookup failed (missing key, HTTP error, bad payload)."""

    pass


class PersistenceError(MediAlignError):
    """Database operation failed.

    Raised when SQLite operations fail unexpectedly.
    """

    pass


class RenameError(MediAlignError):
    """Renaming a file on disk failed."""

    pass


class PipelineCancelledError(MediAlignError):
    """A series run was cancelled while a file was in flight."""

    pass


class SeriesAlreadyRunningError(MediAlignError):
    """A run for this series is already in flight."""

    def __init__(self, series_id: int):
        super().__init__(f"Series {series_id} is already being processed")
        self.series_id = series_id


# Error Handling Decorator
def handle_errors(
    *,
    error_types: tuple[type[Exception], ...],
    default_message: str,
    log_level: str = "error",
    reraise: bool = True,
    wrap_as: type[MediAlignError] | None = None,
):
    """Decorator for standardized error handling.

    Args:
        error_types: Tuple of exception types to catch
        default_message: Message to log when error occurs
        log_level: Logging level (error, warning, info, debug)
        reraise: Whether to re-raise the exception after logging
        wrap_as: Optionally wrap the caught exception in a MediAlignError subclass

    Example:
        @handle_errors(
            error_types=(OSError,),
            default_message="Rename failed",
            wrap_as=RenameError
        )
        def rename_file(path, new_name):
            # ... operation ...
    """

    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except error_types as e:
                log_func = getattr(logger, log_level)
                log_func(
                    f"{default_message}: {e}",
                    exc_info=(log_level == "error"),
                )
                if wrap_as:
                    raise wrap_as(f"{default_message}: {e}") from e
                if reraise:
                    raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except error_types as e:
                log_func = getattr(logger, log_level)
                log_func(
                    f"{default_message}: {e}",
                    exc_info=(log_level == "error"),
                )
                if wrap_as:
                    raise wrap_as(f"{default_message}: {e}") from e
                if reraise:
                    raise

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# Context Manager for Error Handling
class error_context:
    """Context manager for error handling in specific code blocks.

    Example:
        with error_context(
            error_types=(SQLAlchemyError,),
            default_message="Failed to record run",
            wrap_as=PersistenceError
        ):
            # ... code that might raise errors ...
    """

    def __init__(
        self,
        *,
        error_types: tuple[type[Exception], ...],
        default_message: str,
        log_level: str = "error",
        wrap_as: type[MediAlignError] | None = None,
    ):
        self.error_types = error_types
        self.default_message = default_message
        self.log_level = log_level
        self.wrap_as = wrap_as

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and issubclass(exc_type, self.error_types):
            log_func = getattr(logger, self.log_level)
            log_func(
                f"{self.default_message}: {exc_val}",
                exc_info=(self.log_level == "error"),
            )
            if self.wrap_as:
                raise self.wrap_as(f"{self.default_message}: {exc_val}") from exc_val
            return False  # Re-raise the original exception
        return False  # Don't suppress other exceptions
