"""Pipeline errors and failure typing."""


class PipelineError(Exception):
    """Base class for enrichment pipeline failures."""

    error_code = "PIPELINE_ERROR"


class ColumnDetectionError(PipelineError):
    """Raised when no address column can be resolved. Fatal at start."""

    error_code = "NO_ADDRESS_COLUMN"


class SpreadsheetError(PipelineError):
    """Raised when an input file cannot be read."""

    error_code = "SPREADSHEET_ERROR"


class ProviderError(PipelineError):
    """A single provider call failed (HTTP, parse, timeout, no result)."""

    error_code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: str | None = None, status: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class RateLimitError(ProviderError):
    """Provider answered 429; ``retry_after`` is the server's delay in seconds."""

    error_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, provider=provider, status=429)
        self.retry_after = retry_after


class ChainExhaustedError(PipelineError):
    """Every geocoding provider failed for one record."""

    error_code = "CHAIN_EXHAUSTED"


class SnapshotCorruptError(PipelineError):
    """Recovery data could not be decoded."""

    error_code = "SNAPSHOT_CORRUPT"


class NoSnapshotError(PipelineError):
    """Resume or export was requested but no usable snapshot exists."""

    error_code = "NO_SNAPSHOT"


class ProcessingInProgressError(PipelineError):
    """A run is already active on this processor."""

    error_code = "PROCESSING_IN_PROGRESS"
