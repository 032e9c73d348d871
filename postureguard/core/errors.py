from __future__ import annotations


class PostureGuardError(Exception):
    """Base error for PostureGuard."""

    # Stable label persisted in scan logs so operators see the taxonomy, not class names.
    kind = "UnexpectedError"

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class ConfigurationError(PostureGuardError):
    """Missing or invalid provider configuration; fails before any phase runs."""

    kind = "ConfigurationError"


class AuthenticationError(PostureGuardError):
    """Credential rejected by the provider or delegated scope insufficient."""

    kind = "AuthenticationError"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        credential_rejected: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        # A rejected credential invalidates the whole run; a scope denial only one phase.
        self.credential_rejected = credential_rejected


class TransientProviderError(PostureGuardError):
    """Rate limiting, timeouts and upstream 5xx; retried with bounded backoff."""

    kind = "TransientProviderError"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_s = retry_after_s


class PhaseFailure(PostureGuardError):
    """Category unsupported or disabled on the provider side, or retries exhausted."""

    kind = "PhaseFailure"


class RunConflict(PostureGuardError):
    """A scan is already RUNNING for the organization."""

    kind = "RunConflict"


class SnapshotUnavailable(PostureGuardError):
    """A check read a category whose phase failed during this run."""

    kind = "SnapshotUnavailable"
