"""Flyway command-line adapter.

Each scope maps to one ``flyway`` invocation with ``-outputType=json``; the
JSON document on stdout is parsed into a :class:`MigrationResult`. Credentials
travel through ``FLYWAY_*`` environment variables rather than argv.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.engine import URL

from .db import postgres_url
from .errors import MigrationEngineError
from .logging import event_fields
from .models import MigrationResult, MigrationScope
from .settings import Settings

logger = logging.getLogger(__name__)

# libpq query options that the Postgres JDBC driver spells differently.
_JDBC_QUERY_ALIASES = {
    "connect_timeout": "connectTimeout",
    "application_name": "ApplicationName",
}
_JDBC_PASSTHROUGH = frozenset({"sslmode", "sslrootcert", "sslcert", "sslkey", "options"})


class MigrationEngine(Protocol):
    """Contract the orchestrator relies on; one call per scope, blocking."""

    def clean(self, scope: MigrationScope) -> None: ...

    def migrate(self, scope: MigrationScope) -> MigrationResult: ...


class _FlywayModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class FlywayError(_FlywayModel):
    error_code: str | None = None
    message: str = "Flyway reported an error without a message."


class FlywayErrorOutput(_FlywayModel):
    error: FlywayError


class FlywayWarning(_FlywayModel):
    message: str = ""


class FlywayMigrateOutput(_FlywayModel):
    schema_name: str | None = None
    initial_schema_version: str | None = None
    target_schema_version: str | None = None
    migrations_executed: int = Field(default=0, ge=0)
    success: bool = True
    warnings: list[FlywayWarning | str] = Field(default_factory=list)

    def warning_messages(self) -> tuple[str, ...]:
        return tuple(item if isinstance(item, str) else item.message for item in self.warnings)


def jdbc_url(database_url: str | URL, *, connect_timeout_seconds: int | None = None) -> str:
    """Render a SQLAlchemy Postgres URL as a Flyway JDBC URL (credentials excluded)."""
    url = postgres_url(database_url)

    host = url.host or "localhost"
    authority = f"{host}:{url.port}" if url.port else host
    query: dict[str, str] = {}
    for key, value in (url.query or {}).items():
        rendered = value[-1] if isinstance(value, tuple) else value
        if key in _JDBC_QUERY_ALIASES:
            query[_JDBC_QUERY_ALIASES[key]] = str(rendered)
        elif key in _JDBC_PASSTHROUGH:
            query[key] = str(rendered)
    if connect_timeout_seconds is not None:
        query.setdefault("connectTimeout", str(int(connect_timeout_seconds)))

    base = f"jdbc:postgresql://{authority}/{url.database or ''}"
    if not query:
        return base
    suffix = "&".join(f"{key}={value}" for key, value in sorted(query.items()))
    return f"{base}?{suffix}"


def flyway_arguments(scope: MigrationScope, command: str) -> list[str]:
    """Build the Flyway arguments for ``command`` (``clean`` or ``migrate``) on ``scope``."""
    locations = ",".join(f"filesystem:{path.resolve()}" for path in scope.locations)
    return [
        f"-schemas={scope.schema_name}",
        f"-defaultSchema={scope.schema_name}",
        "-createSchemas=true",
        f"-locations={locations}",
        f"-table={scope.history_table}",
        f"-cleanDisabled={'false' if scope.clean_before_migrate else 'true'}",
        "-baselineOnMigrate=true",
        f"-baselineVersion={scope.baseline_version}",
        "-outputType=json",
        command,
    ]


def _parse_output(stdout: str) -> dict:
    text = stdout.strip()
    start = text.find("{")
    if start < 0:
        raise ValueError("no JSON document in Flyway output")
    payload = json.loads(text[start:])
    if not isinstance(payload, dict):
        raise ValueError("Flyway output is not a JSON object")
    return payload


class FlywayEngine:
    """Runs scopes through the Flyway CLI."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def clean(self, scope: MigrationScope) -> None:
        self._invoke(scope, "clean")

    def migrate(self, scope: MigrationScope) -> MigrationResult:
        payload = self._invoke(scope, "migrate")
        try:
            output = FlywayMigrateOutput.model_validate(payload)
        except ValidationError as exc:
            raise MigrationEngineError(
                f"Unexpected Flyway migrate output: {exc}",
                code="INVALID_OUTPUT",
                scope=scope,
            ) from exc
        if not output.success:
            raise MigrationEngineError("Flyway reported an unsuccessful migrate.", scope=scope)
        return MigrationResult(
            label=scope.label,
            schema_name=output.schema_name or scope.schema_name,
            migrations_executed=output.migrations_executed,
            target_schema_version=output.target_schema_version,
            initial_schema_version=output.initial_schema_version,
            warnings=output.warning_messages(),
        )

    def command_line(self, scope: MigrationScope, command: str) -> list[str]:
        return [self._resolve_executable(scope), *flyway_arguments(scope, command)]

    def build_env(self) -> dict[str, str]:
        """Process env with ``FLYWAY_URL``/``FLYWAY_USER``/``FLYWAY_PASSWORD`` set."""
        url = postgres_url(self._settings.database_url)
        env = os.environ.copy()
        env["FLYWAY_URL"] = jdbc_url(
            url,
            connect_timeout_seconds=self._settings.database_connect_timeout_seconds,
        )
        if url.username:
            env["FLYWAY_USER"] = url.username
        if url.password:
            env["FLYWAY_PASSWORD"] = url.password
        return env

    def _resolve_executable(self, scope: MigrationScope) -> str:
        found = shutil.which(self._settings.flyway_command)
        if found is None:
            raise MigrationEngineError(
                f"Flyway executable not found (looked for `{self._settings.flyway_command}`). "
                "Install the Flyway CLI or set MIGRATIONS_FLYWAY_COMMAND.",
                code="FLYWAY_NOT_FOUND",
                scope=scope,
            )
        return found

    def _invoke(self, scope: MigrationScope, command: str) -> dict:
        cmd: Sequence[str] = self.command_line(scope, command)
        logger.debug(
            "engine.invoke",
            extra=event_fields(scope=scope.label, schema=scope.schema_name, command=command),
        )
        try:
            env = self.build_env()
        except ValueError as exc:
            raise MigrationEngineError(str(exc), code="CONFIG_ERROR", scope=scope) from exc

        try:
            completed = subprocess.run(
                list(cmd),
                env=env,
                capture_output=True,
                text=True,
                check=False,
                timeout=self._settings.flyway_timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise MigrationEngineError(
                f"Flyway {command} exceeded {self._settings.flyway_timeout_seconds:.0f}s "
                "(set MIGRATIONS_FLYWAY_TIMEOUT_SECONDS to override).",
                code="TIMEOUT",
                scope=scope,
            ) from exc
        except OSError as exc:
            raise MigrationEngineError(
                f"Could not execute {cmd[0]}: {exc}",
                code="EXEC_ERROR",
                scope=scope,
            ) from exc

        try:
            payload = _parse_output(completed.stdout)
        except ValueError as exc:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise MigrationEngineError(
                f"Flyway {command} failed (exit {completed.returncode}): {detail or exc}",
                code="INVALID_OUTPUT",
                scope=scope,
            ) from exc

        if "error" in payload:
            try:
                error = FlywayErrorOutput.model_validate(payload).error
            except ValidationError:
                raise MigrationEngineError(str(payload["error"]), scope=scope) from None
            raise MigrationEngineError(error.message, code=error.error_code, scope=scope)
        if completed.returncode != 0:
            raise MigrationEngineError(
                f"Flyway {command} exited with status {completed.returncode}.",
                scope=scope,
            )
        return payload


__all__ = [
    "FlywayEngine",
    "FlywayErrorOutput",
    "FlywayMigrateOutput",
    "MigrationEngine",
    "flyway_arguments",
    "jdbc_url",
]
