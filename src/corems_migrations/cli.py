"""corems-migrations: discover and run Flyway migrations for installed services."""

from __future__ import annotations

from functools import partial
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .db import migration_lock
from .engine import FlywayEngine
from .errors import MigrationRunError, RunConfigError, ServiceNotFoundError
from .logging import setup_logging
from .models import MigrationResult, MigrationScope, OrchestrationMode, RunReport
from .orchestrator import MigrationOrchestrator
from .settings import Settings, get_settings

app = typer.Typer(
    add_completion=False,
    invoke_without_command=True,
    help="Discover service migrations under repos/ and apply them with Flyway (core first).",
)

EXIT_FAILURE = 1
EXIT_USAGE = 2


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"corems-migrations {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def load_settings(**overrides: Any) -> Settings:
    """Build settings from env/.env with explicit CLI overrides applied on top."""
    values = {key: value for key, value in overrides.items() if value is not None}
    try:
        if not values:
            return get_settings()
        return Settings(**values)
    except ValidationError as exc:
        typer.echo(f"❌ Invalid configuration:\n{exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE) from exc


def _selection_overrides(
    *,
    mockdata: bool,
    clean: bool,
    service: str | None,
    mode: OrchestrationMode | None,
    repos_path: Path | None,
    core_path: Path | None,
) -> dict[str, Any]:
    return {
        "include_mockdata": True if mockdata else None,
        "clean_before_migrate": True if clean else None,
        "service": service,
        "mode": mode,
        "repos_path": repos_path,
        "core_path": core_path,
    }


def _echo_scope(scope: MigrationScope) -> None:
    typer.echo(f"• {scope.label}  schema={scope.schema_name}  table={scope.history_table}")
    for location in scope.locations:
        typer.echo(f"    - filesystem:{location}")


def _echo_result(result: MigrationResult) -> None:
    initial = result.initial_schema_version or "-"
    target = result.target_schema_version or "-"
    typer.echo(
        f"  {result.label}: {result.migrations_executed} migration(s) executed, "
        f"schema {result.schema_name} {initial} -> {target}"
    )


def _echo_report(report: RunReport) -> None:
    for result in report.results:
        _echo_result(result)
    typer.echo("✅ Migration completed!")
    typer.echo(f"   Migrations executed: {report.migrations_executed}")
    typer.echo(f"   Schema version: {report.schema_version or '-'}")


def _echo_service_not_found(exc: ServiceNotFoundError) -> None:
    typer.echo(f"❌ Service '{exc.requested}' not found.", err=True)
    if exc.available:
        typer.echo("Available services:", err=True)
        for name in exc.available:
            typer.echo(f"  - {name}", err=True)
    else:
        typer.echo("No migratable services are installed.", err=True)


MockdataOption = typer.Option(False, "--mockdata", help="Include each service's migrations/mockdata.")
CleanOption = typer.Option(False, "--clean", help="DROP all objects in target schema(s) before migrating.")
ServiceOption = typer.Option(None, "--service", "-s", help="Only migrate this service (implies per-service mode).")
ModeOption = typer.Option(None, "--mode", help="global (one shared history) or per-service.")
ReposOption = typer.Option(None, "--repos-path", help="Directory holding one checkout per service.")
CoreOption = typer.Option(None, "--core-path", help="Directory holding core/global migrations.")


@app.command(name="migrate", help="Run core and service migrations through Flyway.")
def migrate(
    mockdata: bool = MockdataOption,
    clean: bool = CleanOption,
    service: Optional[str] = ServiceOption,
    mode: Optional[OrchestrationMode] = ModeOption,
    repos_path: Optional[Path] = ReposOption,
    core_path: Optional[Path] = CoreOption,
    no_lock: bool = typer.Option(False, "--no-lock", help="Skip the Postgres advisory lock."),
) -> None:
    overrides = _selection_overrides(
        mockdata=mockdata,
        clean=clean,
        service=service,
        mode=mode,
        repos_path=repos_path,
        core_path=core_path,
    )
    if no_lock:
        overrides["lock_enabled"] = False
    settings = load_settings(**overrides)
    setup_logging(settings)

    lock = partial(migration_lock, settings) if settings.lock_enabled else None
    orchestrator = MigrationOrchestrator(settings.run_config(), FlywayEngine(settings), lock=lock)

    try:
        report = orchestrator.run()
    except ServiceNotFoundError as exc:
        _echo_service_not_found(exc)
        raise typer.Exit(code=EXIT_USAGE) from exc
    except RunConfigError as exc:
        typer.echo(f"❌ Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE) from exc
    except MigrationRunError as exc:
        for result in exc.completed:
            _echo_result(result)
        code = f" [{exc.cause.code}]" if exc.cause.code else ""
        typer.echo(f"❌ Migration failed for {exc.scope.label}{code}: {exc.cause.message}", err=True)
        raise typer.Exit(code=EXIT_FAILURE) from exc
    except SQLAlchemyError as exc:
        typer.echo(f"❌ Database unavailable: {exc}", err=True)
        raise typer.Exit(code=EXIT_FAILURE) from exc

    if not report.scopes:
        typer.echo("⚠️  No migration locations found; nothing to do.")
        return
    _echo_report(report)


@app.command(name="plan", help="Show the ordered scopes a migrate run would execute.")
def plan(
    mockdata: bool = MockdataOption,
    service: Optional[str] = ServiceOption,
    mode: Optional[OrchestrationMode] = ModeOption,
    repos_path: Optional[Path] = ReposOption,
    core_path: Optional[Path] = CoreOption,
) -> None:
    settings = load_settings(
        **_selection_overrides(
            mockdata=mockdata,
            clean=False,
            service=service,
            mode=mode,
            repos_path=repos_path,
            core_path=core_path,
        )
    )
    setup_logging(settings)
    orchestrator = MigrationOrchestrator(settings.run_config(), FlywayEngine(settings))

    try:
        scopes = orchestrator.plan(orchestrator.discover())
    except ServiceNotFoundError as exc:
        _echo_service_not_found(exc)
        raise typer.Exit(code=EXIT_USAGE) from exc
    except RunConfigError as exc:
        typer.echo(f"❌ Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE) from exc

    if not scopes:
        typer.echo("⚠️  No migration locations found.")
        return
    typer.echo(f"Mode: {orchestrator.config.mode.value}")
    for scope in scopes:
        _echo_scope(scope)


@app.command(name="services", help="List installed services that ship migrations.")
def services(repos_path: Optional[Path] = ReposOption) -> None:
    settings = load_settings(repos_path=repos_path)
    setup_logging(settings)
    orchestrator = MigrationOrchestrator(settings.run_config(), FlywayEngine(settings))

    sources = orchestrator.discover()
    if not sources:
        typer.echo(f"No migratable services under {settings.repos_path}")
        return
    for source in sources:
        extra = "  (mockdata)" if source.mockdata_path is not None else ""
        typer.echo(f"{source.name}{extra}")


if __name__ == "__main__":
    app()
