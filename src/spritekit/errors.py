"""Error taxonomy for spritekit.

Every failure raised by the client, stream consumers and orchestration
derives from :class:`SpritesError`.  API failures carry enough context
(method, path, status, server message, attempt count) to diagnose a CI
failure from the job log alone.
"""

from __future__ import annotations


class SpritesError(Exception):
    """Base class for all spritekit errors."""


class ConfigurationError(SpritesError):
    """Missing token, invalid execution context or bad settings.

    Raised before any network call; never retried.
    """


class ApiError(SpritesError):
    """A failed request against the Sprites API."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        method: str | None = None,
        path: str | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.method = method
        self.path = path
        self.code = code  # transport-level error name, e.g. "ConnectTimeout"
        self.attempts = 1

    @property
    def retryable(self) -> bool:
        return False

    def __str__(self) -> str:
        parts = []
        if self.method and self.path:
            parts.append(f"{self.method} {self.path}")
        if self.status is not None:
            parts.append(f"status {self.status}")
        elif self.code:
            parts.append(self.code)
        prefix = f"[{', '.join(parts)}] " if parts else ""
        suffix = f" (after {self.attempts} attempts)" if self.attempts > 1 else ""
        return f"{prefix}{self.message}{suffix}"


class TransientApiError(ApiError):
    """Retryable failure: 408/429/5xx or a network-level error."""

    @property
    def retryable(self) -> bool:
        return True


class TerminalApiError(ApiError):
    """Non-retryable failure: other 4xx or an unparseable response."""


class NotFoundError(TerminalApiError):
    """404: the resource does not exist.

    Lookups translate this into "does not exist" instead of failing.
    """


class StreamProtocolError(SpritesError):
    """A progress stream ended without a terminal event, or reported an error."""


class StepFailedError(SpritesError):
    """A step's command exited with a non-zero code."""

    def __init__(self, exit_code: int, step_key: str | None = None):
        self.exit_code = exit_code
        self.step_key = step_key
        label = f"Step {step_key!r}" if step_key else "Command"
        super().__init__(f"{label} exited with code {exit_code}")
