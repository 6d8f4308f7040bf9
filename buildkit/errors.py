"""Error taxonomy shared by the filter engine, scopes, executor and store."""

from __future__ import annotations


class FilterError(ValueError):
    """The root tree of a scope is missing, unreadable, or a path lies outside it."""


class ScopeConfigError(ValueError):
    """A scope or stage was declared with invalid configuration."""


class StageError(RuntimeError):
    """A stage invocation failed (non-zero toolchain exit or cancellation)."""

    def __init__(
        self,
        stage: str,
        *,
        exit_code: int | None,
        diagnostics: str = "",
        cancelled: bool = False,
    ) -> None:
        self.stage = stage
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        self.cancelled = cancelled
        if cancelled:
            message = f"Stage {stage} cancelled"
        else:
            message = f"Stage {stage} failed (exit={exit_code})"
        super().__init__(message)


class CacheStoreError(RuntimeError):
    """Publishing to or reading from the artifact store failed."""
