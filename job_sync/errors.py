"""Exception hierarchy for sync and enrichment failures."""

from __future__ import annotations


class EnrichmentError(Exception):
    """A single job's enrichment attempt failed.

    ``operation`` names the step that failed (``load``, ``provider``,
    ``persist``, ``timeout``, ``mark_enriched``) so failures recorded on the
    job are traceable.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        job_id: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.job_id = job_id
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.operation}] {self.message}"


class ServiceUnavailableError(EnrichmentError):
    """Provider unreachable, rate limited or misconfigured."""

    def __init__(self, service: str, detail: str = "", job_id: int | None = None):
        message = f"{service} service is not available"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, "service_check", job_id)
        self.service = service


class EnrichmentValidationError(EnrichmentError):
    """Provider output failed schema validation."""

    def __init__(
        self,
        message: str,
        operation: str = "validate",
        job_id: int | None = None,
        errors: list[str] | None = None,
    ):
        super().__init__(message, operation, job_id)
        self.errors = errors or []


class JobNotFoundError(LookupError):
    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(ValueError):
    """Requested enrichment status change is not an edge of the state machine."""


class ExtractionError(Exception):
    """Upstream job source returned an error or an unparseable page."""


class TransformError(ValueError):
    """Raw record is missing fields required to build a job posting."""
