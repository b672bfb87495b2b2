from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from reviewline.routing.models import ProviderAttempt


class ReviewlineError(Exception):
    """Base exception for all reviewline errors.

    Attributes:
        code: Optional machine-readable error code (e.g. ``"NOT_FOUND"``).
        details: Arbitrary key/value context about the error.
    """

    default_code: str | None = None

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code if code is not None else self.default_code
        self.details = details or {}

    @property
    def is_retryable(self) -> bool:
        """Whether the operation that raised this error can be retried."""
        return False


class ConfigurationError(ReviewlineError):
    default_code = "CONFIGURATION"


# ---------------------------------------------------------------------------
# State machine / validation errors: surfaced to the caller, never retried
# ---------------------------------------------------------------------------


class NotFoundError(ReviewlineError):
    default_code = "NOT_FOUND"


class PipelineNotFoundError(NotFoundError): ...


class StepNotFoundError(NotFoundError): ...


class InvalidStateError(ReviewlineError):
    default_code = "INVALID_STATE"


class OutOfOrderError(InvalidStateError):
    """An earlier step has not been approved yet."""

    default_code = "OUT_OF_ORDER"


class OutOfRangeError(ReviewlineError):
    default_code = "OUT_OF_RANGE"


class NoArtifactError(ReviewlineError):
    default_code = "NO_ARTIFACT"


class OutputParsingError(ReviewlineError):
    """Generated text did not contain the expected JSON."""

    default_code = "OUTPUT_PARSING"


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(ReviewlineError):
    """A single provider call failed.

    Attributes:
        provider_id: The provider that raised the error, when known.
        status_code: HTTP status code of the failed response, if any.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        provider_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code, details)
        self.provider_id = provider_id
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network failure, timeout, rate limit or server error.

    Always retryable against the same or another provider.
    """

    default_code = "PROVIDER_TRANSIENT"

    @property
    def is_retryable(self) -> bool:  # noqa: D102
        return True


class FatalProviderError(ProviderError):
    """Bad credentials or a request the provider will never accept.

    Not retryable against the same provider; the router still falls back
    to a different one.
    """

    default_code = "PROVIDER_FATAL"


class AllProvidersFailedError(ReviewlineError):
    """Every candidate provider failed or none was available in time.

    Attributes:
        attempts: One entry per candidate, in the order they were considered.
    """

    default_code = "ALL_PROVIDERS_FAILED"

    def __init__(self, message: str, attempts: list[ProviderAttempt] | None = None) -> None:
        self.attempts: list[ProviderAttempt] = list(attempts or [])
        super().__init__(
            message,
            details={
                "attempts": [
                    {"provider": a.provider_id, "kind": str(a.kind), "reason": a.reason}
                    for a in self.attempts
                ]
            },
        )

    @property
    def reasons(self) -> dict[str, str]:
        """Map of provider id to its failure reason."""
        return {a.provider_id: a.reason or "" for a in self.attempts if not a.success}


class UnexpectedFaultError(ReviewlineError):
    """Step execution failed for a reason other than provider outage.

    The step has been rolled back to ``pending``; the original exception
    is available as ``__cause__``.
    """

    default_code = "UNEXPECTED_FAULT"
