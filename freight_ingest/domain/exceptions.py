"""Exception hierarchy for the freight ad ingestion pipeline.

Following error taxonomy: retryable, non-retryable, validation, rate-limit.
"""


class FreightIngestError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(FreightIngestError):
    """Errors that can be retried on the next cycle (network, throttling)."""

    pass


class NonRetryableError(FreightIngestError):
    """Errors that should not be retried (validation, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Data validation errors."""

    pass


class RateLimitError(RetryableError):
    """Upstream rate limit exceeded."""

    def __init__(self, retry_after: int | None = None) -> None:
        """Initialize with optional retry_after seconds."""
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}s")


class TelegramAPIError(RetryableError):
    """Telegram API communication errors."""

    pass


class LLMAPIError(RetryableError):
    """Structured-extraction service communication errors."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class DuplicateRecordError(NonRetryableError):
    """Insert collided with a live record holding the same composite hash."""

    def __init__(self, params_hash: str) -> None:
        self.params_hash = params_hash
        super().__init__(f"Live record already exists for params hash {params_hash}")


class LowQualityBatchError(NonRetryableError):
    """Extraction yielded nothing usable; the batch is dropped."""

    pass
