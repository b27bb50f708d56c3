"""Sequential migration orchestration across core and service scopes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager, nullcontext
from uuid import uuid4

from .discovery import build_core_scope, build_global_scope, build_scope, discover_services
from .engine import MigrationEngine
from .errors import MigrationEngineError, MigrationRunError, RunConfigError, ServiceNotFoundError
from .logging import bind_run_context, clear_run_context, event_fields
from .models import (
    MigrationResult,
    MigrationScope,
    OrchestrationMode,
    RunConfig,
    RunReport,
    RunState,
    ServiceMigrationSource,
)

logger = logging.getLogger(__name__)

LockFactory = Callable[[], AbstractContextManager[None]]


class MigrationOrchestrator:
    """Turn a repos directory plus a :class:`RunConfig` into ordered engine invocations.

    Scopes run one at a time; the first engine failure stops the run. Scopes that
    completed before the failure stay applied.
    """

    def __init__(
        self,
        config: RunConfig,
        engine: MigrationEngine,
        *,
        lock: LockFactory | None = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._lock = lock
        self.state = RunState.IDLE

    @property
    def config(self) -> RunConfig:
        return self._config

    def discover(self) -> list[ServiceMigrationSource]:
        return discover_services(self._config.repos_root, suffix=self._config.service_suffix)

    def plan(self, sources: Sequence[ServiceMigrationSource]) -> list[MigrationScope]:
        """Return the scopes to execute, core first, for the configured mode."""
        config = self._config
        if config.mode is OrchestrationMode.GLOBAL:
            if config.service_filter:
                raise RunConfigError(
                    f"Service filter '{config.service_filter}' needs per-service mode; "
                    "global mode always migrates every service."
                )
            scope = build_global_scope(sources, config)
            if not scope.locations:
                logger.warning("plan.no_locations", extra=event_fields(scope=scope.label))
                return []
            return [scope]

        if config.service_filter:
            selected = [source for source in sources if source.name == config.service_filter]
            if not selected:
                raise ServiceNotFoundError(config.service_filter, [source.name for source in sources])
            return [build_scope(source, config) for source in selected]

        scopes: list[MigrationScope] = []
        core_scope = build_core_scope(config)
        if core_scope is not None:
            scopes.append(core_scope)
        scopes.extend(build_scope(source, config) for source in sources)
        return scopes

    def run_scope(self, scope: MigrationScope) -> MigrationResult:
        """Run one scope: optional clean, then migrate. Engine errors propagate."""
        logger.info(
            "scope.started",
            extra=event_fields(
                scope=scope.label,
                schema=scope.schema_name,
                history_table=scope.history_table,
                locations=",".join(str(path) for path in scope.locations),
            ),
        )
        if scope.clean_before_migrate:
            logger.warning(
                "scope.clean: DROPPING ALL OBJECTS in schema %s before migrating (irreversible)",
                scope.schema_name,
                extra=event_fields(scope=scope.label, schema=scope.schema_name),
            )
            self._engine.clean(scope)

        result = self._engine.migrate(scope)
        logger.info(
            "scope.completed",
            extra=event_fields(
                scope=scope.label,
                schema=result.schema_name,
                migrations_executed=result.migrations_executed,
                schema_version=result.target_schema_version,
            ),
        )
        for warning in result.warnings:
            logger.warning("scope.engine_warning %s", warning, extra=event_fields(scope=scope.label))
        return result

    def run(self) -> RunReport:
        """Discover, plan, and execute every scope in order."""
        report = RunReport()
        bind_run_context(uuid4().hex[:8])
        try:
            self.state = report.state = RunState.DISCOVERING
            report.services = self.discover()
            try:
                report.scopes = self.plan(report.services)
            except ServiceNotFoundError as exc:
                logger.error(
                    "run.service_not_found",
                    extra=event_fields(requested=exc.requested, available=",".join(exc.available)),
                )
                raise
            except RunConfigError as exc:
                logger.error("run.invalid_config", extra=event_fields(error=str(exc)))
                raise

            self.state = report.state = RunState.MIGRATING
            lock = self._lock() if self._lock is not None else nullcontext()
            with lock:
                for scope in report.scopes:
                    try:
                        report.results.append(self.run_scope(scope))
                    except MigrationEngineError as exc:
                        logger.error(
                            "scope.failed",
                            extra=event_fields(
                                scope=scope.label,
                                schema=scope.schema_name,
                                error_code=exc.code,
                                error=exc.message,
                            ),
                        )
                        raise MigrationRunError(scope, report.results, exc) from exc

            self.state = report.state = RunState.DONE
            logger.info(
                "run.completed",
                extra=event_fields(
                    scopes=len(report.results),
                    migrations_executed=report.migrations_executed,
                    schema_version=report.schema_version,
                ),
            )
            return report
        except BaseException:
            # Lock, discovery and interrupt failures end the run too.
            self.state = report.state = RunState.FAILED
            raise
        finally:
            clear_run_context()


__all__ = ["LockFactory", "MigrationOrchestrator"]
