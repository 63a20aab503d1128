from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sspgen.services.generation.run_store import WriteFailure


class SspgenError(Exception):
    """Base error for sspgen."""


class UnauthorizedError(SspgenError):
    """No valid caller identity."""


class BadRequestError(SspgenError):
    """Required input missing or invalid."""


class NotFoundError(SspgenError):
    """Referenced record does not exist or is not visible to the caller."""


class PersistenceError(SspgenError):
    """Store write or read failed."""


class ProviderConfigError(SspgenError):
    """Missing or invalid provider configuration."""


class ProviderAuthError(SspgenError):
    """Provider authentication/authorization failure."""


class GenerationError(SspgenError):
    """Narrative generation failed."""


class GenerationEmptyError(GenerationError):
    """Provider returned no content."""


class GenerationMalformedError(GenerationError):
    """Provider content does not parse into the narrative structure."""


class GenerationTransportError(GenerationError):
    """Provider request failed in transit or with an error status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GenerationTimeoutError(GenerationTransportError):
    """Provider call exceeded its time budget."""


class IntegrationUnavailableError(GenerationError):
    """Circuit breaker is open for the provider."""


class RunFailedError(SspgenError):
    """A run reached the failed state; wraps the error that caused it."""

    def __init__(
        self,
        run_id: str,
        cause: BaseException,
        write_failures: tuple[WriteFailure, ...] = (),
    ) -> None:
        message = str(cause) or cause.__class__.__name__
        super().__init__(message)
        self.run_id = run_id
        self.cause = cause
        self.write_failures = write_failures
