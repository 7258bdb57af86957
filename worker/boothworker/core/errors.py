"""Error taxonomy shared by the orchestrator, webhook handler and stores."""


class PipelineError(RuntimeError):
    """Base class for every error raised by the ingest pipeline."""


class ConfigError(PipelineError):
    """Raised when mandatory configuration is missing."""


class SourceUnavailable(PipelineError):
    """The Source Registry entry is missing or disabled."""


class ExternalServiceError(PipelineError):
    """The crawl provider could not be reached or rejected the request."""


class ExtractionError(PipelineError):
    """The extraction service failed to turn crawled pages into candidates."""


class UnknownJob(PipelineError):
    """A webhook or lookup referenced a job id that is not in the Job Store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobLimitExceeded(PipelineError):
    """Starting another crawl would exceed the in-flight limits."""
