"""Domain-specific exceptions for migration runs."""

from __future__ import annotations

from collections.abc import Sequence

from .models import MigrationResult, MigrationScope


class MigrationsError(Exception):
    """Base class for migration runner failures."""


class RunConfigError(MigrationsError):
    """Raised when a run configuration combines options that cannot be honoured together."""


class ServiceNotFoundError(MigrationsError):
    """Raised when the requested service filter matches no discovered service."""

    def __init__(self, requested: str, available: Sequence[str]) -> None:
        self.requested = requested
        self.available = list(available)
        listed = ", ".join(self.available) if self.available else "(none)"
        super().__init__(f"Service '{requested}' not found. Available services: {listed}")


class MigrationEngineError(MigrationsError):
    """Raised when the migration engine reports a failure for a scope."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        scope: MigrationScope | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.scope = scope


class MigrationRunError(MigrationsError):
    """Raised when a run halts at a failing scope; earlier scopes stay applied."""

    def __init__(
        self,
        scope: MigrationScope,
        completed: Sequence[MigrationResult],
        cause: MigrationEngineError,
    ) -> None:
        super().__init__(f"Migration failed for {scope.label}: {cause}")
        self.scope = scope
        self.completed = list(completed)
        self.cause = cause


__all__ = [
    "MigrationEngineError",
    "MigrationRunError",
    "MigrationsError",
    "RunConfigError",
    "ServiceNotFoundError",
]
