"""Error taxonomy for payroll exports."""


class PayrollExportError(Exception):
    """Base class for all payroll export errors."""


class ConfigurationError(PayrollExportError):
    """Missing or invalid export configuration. Blocks job creation."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class JobStateError(PayrollExportError):
    """A job was asked to do something its current status does not allow."""


class MappingGapError(PayrollExportError):
    """No wage/time-type code exists for a category. The record is skipped."""

    def __init__(self, category_id: str | None, provider: str):
        super().__init__(f"No {provider} mapping for category {category_id}")
        self.category_id = category_id
        self.provider = provider


class ApiError(PayrollExportError):
    """User-friendly API error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        is_retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.is_retryable = is_retryable


class AuthenticationError(ApiError):
    """Credentials were rejected. Never retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, status_code, is_retryable=False)


class TransientProviderError(ApiError):
    """Network, timeout, 408, 429 or 5xx. Retried with backoff."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, status_code, is_retryable=True)


class PermanentProviderError(ApiError):
    """Any other 4xx. Fails the record immediately."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, status_code, is_retryable=False)
