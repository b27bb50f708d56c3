"""Shared fixtures: throwaway repos layouts and a recording migration engine."""

from __future__ import annotations

import hashlib
import os
from collections.abc import Callable
from pathlib import Path

import pytest

from corems_migrations.errors import MigrationEngineError
from corems_migrations.models import (
    MigrationResult,
    MigrationScope,
    OrchestrationMode,
    RunConfig,
)
from corems_migrations.settings import reload_settings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in list(os.environ):
        if key.upper().startswith("MIGRATIONS_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    reload_settings()


class RecordingEngine:
    """In-memory stand-in for Flyway.

    Versioned files (``V*.sql``) apply once per schema; repeatable files
    (``R__*.sql``) re-apply when their content changes.
    """

    def __init__(self, *, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.calls: list[tuple[str, str]] = []
        self.scopes: list[MigrationScope] = []
        self.events: list[str] = []
        self._versioned: dict[str, set[str]] = {}
        self._repeatable: dict[tuple[str, str], str] = {}
        self._versions: dict[str, str] = {}

    def clean(self, scope: MigrationScope) -> None:
        self.calls.append(("clean", scope.label))
        self.events.append("clean")
        self._versioned.pop(scope.schema_name, None)
        self._versions.pop(scope.schema_name, None)
        for key in [key for key in self._repeatable if key[0] == scope.schema_name]:
            del self._repeatable[key]

    def migrate(self, scope: MigrationScope) -> MigrationResult:
        self.calls.append(("migrate", scope.label))
        self.events.append("migrate")
        self.scopes.append(scope)
        if self.fail_on == scope.label:
            raise MigrationEngineError(
                "Validate failed: Migration checksum mismatch for migration version 1.0.0",
                code="VALIDATE_ERROR",
                scope=scope,
            )

        initial = self._versions.get(scope.schema_name)
        applied = self._versioned.setdefault(scope.schema_name, set())
        executed = 0
        for location in scope.locations:
            for path in sorted(location.glob("*.sql")):
                if path.name.startswith("V"):
                    if path.name in applied:
                        continue
                    applied.add(path.name)
                    self._versions[scope.schema_name] = path.name[1:].split("__", 1)[0]
                    executed += 1
                elif path.name.startswith("R__"):
                    checksum = hashlib.sha256(path.read_bytes()).hexdigest()
                    key = (scope.schema_name, path.name)
                    if self._repeatable.get(key) == checksum:
                        continue
                    self._repeatable[key] = checksum
                    executed += 1

        return MigrationResult(
            label=scope.label,
            schema_name=scope.schema_name,
            migrations_executed=executed,
            target_schema_version=self._versions.get(scope.schema_name),
            initial_schema_version=initial,
        )


def write_migration(directory: Path, name: str, sql: str = "SELECT 1;\n") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(sql, encoding="utf-8")
    return path


@pytest.fixture
def recording_engine() -> RecordingEngine:
    return RecordingEngine()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Layout with a core dir, one migratable service, and one without migrations.

    ::

        migrations/core/V1.0.0__extensions.sql
        repos/alpha-ms/migrations/setup/V1.0.0__init.sql
        repos/beta-ms/README.md
    """
    write_migration(tmp_path / "migrations" / "core", "V1.0.0__extensions.sql")
    write_migration(tmp_path / "repos" / "alpha-ms" / "migrations" / "setup", "V1.0.0__init.sql")
    (tmp_path / "repos" / "beta-ms").mkdir(parents=True)
    (tmp_path / "repos" / "beta-ms" / "README.md").write_text("no migrations here\n")
    return tmp_path


@pytest.fixture
def make_config(workspace: Path) -> Callable[..., RunConfig]:
    def _make(**overrides: object) -> RunConfig:
        values: dict[str, object] = {
            "repos_root": workspace / "repos",
            "core_path": workspace / "migrations" / "core",
            "mode": OrchestrationMode.PER_SERVICE,
        }
        values.update(overrides)
        return RunConfig(**values)  # type: ignore[arg-type]

    return _make
