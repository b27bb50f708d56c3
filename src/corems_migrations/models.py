"""Value objects passed between discovery, the orchestrator, and the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

BASELINE_VERSION = "0"
DEFAULT_HISTORY_TABLE = "flyway_schema_history"
DEFAULT_GLOBAL_SCHEMA = "migrations"
DEFAULT_SERVICE_SUFFIX = "-ms"


class OrchestrationMode(str, Enum):
    """How discovered services are grouped into engine invocations."""

    GLOBAL = "global"
    PER_SERVICE = "per-service"


class RunState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    MIGRATING = "migrating"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Immutable inputs for a single orchestrator run."""

    repos_root: Path
    core_path: Path
    include_mockdata: bool = False
    clean_before_migrate: bool = False
    service_filter: str | None = None
    mode: OrchestrationMode = OrchestrationMode.GLOBAL
    service_suffix: str = DEFAULT_SERVICE_SUFFIX
    history_table: str = DEFAULT_HISTORY_TABLE
    global_schema: str = DEFAULT_GLOBAL_SCHEMA


@dataclass(frozen=True, slots=True)
class ServiceMigrationSource:
    name: str
    setup_path: Path
    mockdata_path: Path | None = None


@dataclass(frozen=True, slots=True)
class MigrationScope:
    """One engine invocation: a schema/history-table pair plus ordered locations."""

    label: str
    schema_name: str
    locations: tuple[Path, ...]
    history_table: str = DEFAULT_HISTORY_TABLE
    clean_before_migrate: bool = False
    baseline_version: str = BASELINE_VERSION


@dataclass(frozen=True, slots=True)
class MigrationResult:
    label: str
    schema_name: str
    migrations_executed: int
    target_schema_version: str | None = None
    initial_schema_version: str | None = None
    warnings: tuple[str, ...] = ()


@dataclass(slots=True)
class RunReport:
    """Outcome of an orchestrator run, in execution order."""

    services: list[ServiceMigrationSource] = field(default_factory=list)
    scopes: list[MigrationScope] = field(default_factory=list)
    results: list[MigrationResult] = field(default_factory=list)
    state: RunState = RunState.IDLE

    @property
    def migrations_executed(self) -> int:
        return sum(result.migrations_executed for result in self.results)

    @property
    def schema_version(self) -> str | None:
        for result in reversed(self.results):
            if result.target_schema_version is not None:
                return result.target_schema_version
        return None


__all__ = [
    "BASELINE_VERSION",
    "DEFAULT_GLOBAL_SCHEMA",
    "DEFAULT_HISTORY_TABLE",
    "DEFAULT_SERVICE_SUFFIX",
    "MigrationResult",
    "MigrationScope",
    "OrchestrationMode",
    "RunConfig",
    "RunReport",
    "RunState",
    "ServiceMigrationSource",
]
