"""Error taxonomy for deployment pipeline failures."""

from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Base class for every failure that aborts a pipeline run."""

    retryable = False

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        return self.message


class ConfigurationError(PipelineError):
    """Missing or invalid static configuration. Requires a human fix."""


class HardFailure(PipelineError):
    """Checkout/resolve failures and stage timeouts."""


class BuildFailure(PipelineError):
    """The image builder exited with an error."""

    def __init__(self, message: str, *, diagnostics: str = "", stage: Optional[str] = None) -> None:
        super().__init__(message, stage=stage)
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        if self.diagnostics:
            return f"{self.message}\n{self.diagnostics}"
        return self.message


class AuthFailure(PipelineError):
    """The registry rejected the credential or the session expired."""


class TransientError(PipelineError):
    """Network or availability problem; safe to retry."""

    retryable = True


class PermissionFailure(PipelineError):
    """The registry denied the write (permissions, quota)."""
