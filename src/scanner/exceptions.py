"""
Scanner Exception Hierarchy.

Every error raised by the scan pipeline derives from GitScannerException and
carries a stable error code so callers can branch without parsing messages.
"""

from datetime import datetime
from typing import Optional


class GitScannerException(Exception):
    """Base class for all scanner errors."""

    error_code = "GIT_SCANNER_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# Platform API errors


class PlatformApiException(GitScannerException):
    error_code = "PLATFORM_API_ERROR"

    def __init__(self, platform: str, message: str, status_code: int = -1):
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code

    def __str__(self) -> str:
        return (
            f"[{self.error_code}] {self.platform} "
            f"(status {self.status_code}): {self.message}"
        )


class UnsupportedPlatformException(PlatformApiException):
    error_code = "UNSUPPORTED_PLATFORM"

    def __init__(self, platform: str):
        super().__init__(platform, f"Unsupported platform: '{platform}'")


# Data processing errors


class DataProcessingException(GitScannerException):
    """
    Raised when a scan cannot turn platform data into stored records.

    Attributes:
        repository_name (Optional[str]): Repository being scanned, when known
        repository_url (Optional[str]): URL of that repository, when known
    """

    error_code = "DATA_PROCESSING_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        repository_name: Optional[str] = None,
        repository_url: Optional[str] = None,
    ):
        super().__init__(message, error_code)
        self.repository_name = repository_name
        self.repository_url = repository_url


class DataValidationException(DataProcessingException):
    error_code = "DATA_VALIDATION_ERROR"

    def __init__(self, field: str, value: object, reason: Optional[str] = None):
        message = f"Invalid value for field '{field}': {value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.field = field
        self.value = value


class DataTransformationException(DataProcessingException):
    error_code = "DATA_TRANSFORMATION_ERROR"


class DataPersistenceException(DataProcessingException):
    error_code = "DATA_PERSISTENCE_ERROR"

    def __init__(self, operation: str, message: Optional[str] = None):
        super().__init__(message or f"Failed to perform {operation} operation")
        self.operation = operation


class DuplicateDataException(DataProcessingException):
    error_code = "DUPLICATE_DATA"


class DataNotFoundException(DataProcessingException):
    error_code = "DATA_NOT_FOUND"


class RateLimitExceededException(DataProcessingException):
    """Raised when the wait for a quota reset is longer than the configured maximum."""

    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        platform: str,
        current_usage: int,
        total_limit: int,
        threshold: float,
        reset_time: datetime,
    ):
        super().__init__(
            f"Rate limit threshold ({threshold * 100:.0f}%) exceeded for {platform} platform. "
            f"Current usage: {current_usage}/{total_limit}. "
            f"Reset time: {reset_time.isoformat()}. "
            "Stopping scan to prevent rate limit violation."
        )
        self.platform = platform
        self.current_usage = current_usage
        self.total_limit = total_limit
        self.threshold = threshold
        self.reset_time = reset_time


class ScanCancelledException(DataProcessingException):
    error_code = "SCAN_CANCELLED"


# Repository errors


class RepositoryException(GitScannerException):
    error_code = "REPOSITORY_ERROR"


class RepositoryNotFoundException(RepositoryException):
    error_code = "REPOSITORY_NOT_FOUND"


class RepositoryAccessDeniedException(RepositoryException):
    error_code = "REPOSITORY_ACCESS_DENIED"


class RepositoryAuthenticationException(RepositoryException):
    error_code = "REPOSITORY_AUTHENTICATION_FAILED"


class RepositoryCloneException(RepositoryException):
    error_code = "REPOSITORY_CLONE_FAILED"


class InvalidRepositoryUrlException(RepositoryException):
    error_code = "INVALID_REPOSITORY_URL"

    def __init__(self, url: Optional[str]):
        super().__init__(f"Invalid or unsupported repository URL: '{url}'")
        self.url = url
