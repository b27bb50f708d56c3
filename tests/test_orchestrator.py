from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path

import pytest

from corems_migrations.errors import MigrationRunError, RunConfigError, ServiceNotFoundError
from corems_migrations.models import OrchestrationMode, RunState
from corems_migrations.orchestrator import MigrationOrchestrator

from tests.conftest import RecordingEngine, write_migration


def test_per_service_runs_core_then_each_service(make_config, recording_engine: RecordingEngine) -> None:
    orchestrator = MigrationOrchestrator(make_config(), recording_engine)

    report = orchestrator.run()

    assert [source.name for source in report.services] == ["alpha-ms"]
    assert recording_engine.calls == [("migrate", "core"), ("migrate", "alpha-ms")]
    assert [scope.schema_name for scope in report.scopes] == ["migrations", "alpha_ms"]
    assert report.migrations_executed == 2
    assert report.state is RunState.DONE
    assert orchestrator.state is RunState.DONE


def test_unknown_service_filter_lists_available_and_runs_nothing(
    make_config, recording_engine: RecordingEngine
) -> None:
    orchestrator = MigrationOrchestrator(make_config(service_filter="gamma-ms"), recording_engine)

    with pytest.raises(ServiceNotFoundError) as excinfo:
        orchestrator.run()

    assert excinfo.value.requested == "gamma-ms"
    assert excinfo.value.available == ["alpha-ms"]
    assert "alpha-ms" in str(excinfo.value)
    assert recording_engine.calls == []
    assert orchestrator.state is RunState.FAILED


def test_service_filter_skips_core(workspace: Path, make_config, recording_engine: RecordingEngine) -> None:
    write_migration(workspace / "repos" / "user-ms" / "migrations" / "setup", "V1.0.0__users.sql")
    orchestrator = MigrationOrchestrator(make_config(service_filter="user-ms"), recording_engine)

    report = orchestrator.run()

    assert recording_engine.calls == [("migrate", "user-ms")]
    assert report.results[0].schema_name == "user_ms"


def test_global_mode_runs_single_scope_with_core_first(
    workspace: Path, make_config, recording_engine: RecordingEngine
) -> None:
    write_migration(workspace / "repos" / "user-ms" / "migrations" / "setup", "V1.1.0__users.sql")
    orchestrator = MigrationOrchestrator(make_config(mode=OrchestrationMode.GLOBAL), recording_engine)

    report = orchestrator.run()

    assert recording_engine.calls == [("migrate", "global")]
    (scope,) = recording_engine.scopes
    assert scope.schema_name == "migrations"
    assert scope.locations[0] == (workspace / "migrations" / "core").resolve()
    assert all("repos" in str(path) for path in scope.locations[1:])
    assert report.migrations_executed == 3


def test_mockdata_never_included_when_disabled(workspace: Path, make_config, recording_engine) -> None:
    write_migration(workspace / "repos" / "alpha-ms" / "migrations" / "mockdata", "R__seed.sql")

    for mode in OrchestrationMode:
        MigrationOrchestrator(make_config(mode=mode), recording_engine).run()

    for scope in recording_engine.scopes:
        assert all(path.name != "mockdata" for path in scope.locations)


def test_mockdata_included_when_enabled(workspace: Path, make_config, recording_engine) -> None:
    mockdata = workspace / "repos" / "alpha-ms" / "migrations" / "mockdata"
    write_migration(mockdata, "R__seed.sql")

    MigrationOrchestrator(make_config(include_mockdata=True), recording_engine).run()

    service_scope = recording_engine.scopes[-1]
    assert service_scope.locations[-1] == mockdata.resolve()


def test_second_run_executes_nothing(make_config, recording_engine: RecordingEngine) -> None:
    first = MigrationOrchestrator(make_config(), recording_engine).run()
    second = MigrationOrchestrator(make_config(), recording_engine).run()

    assert first.migrations_executed == 2
    assert second.migrations_executed == 0
    assert second.schema_version == "1.0.0"


def test_clean_runs_before_migrate_and_warns_first(make_config, recording_engine: RecordingEngine) -> None:
    class EventHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            if record.levelno >= logging.WARNING and record.getMessage().startswith("scope.clean"):
                recording_engine.events.append("warning")

    handler = EventHandler()
    orchestrator_logger = logging.getLogger("corems_migrations.orchestrator")
    orchestrator_logger.addHandler(handler)
    try:
        orchestrator = MigrationOrchestrator(make_config(service_filter="alpha-ms", clean_before_migrate=True), recording_engine)
        orchestrator.run()
    finally:
        orchestrator_logger.removeHandler(handler)

    assert recording_engine.events == ["warning", "clean", "migrate"]
    assert recording_engine.calls == [("clean", "alpha-ms"), ("migrate", "alpha-ms")]


def test_clean_not_called_by_default(make_config, recording_engine: RecordingEngine) -> None:
    MigrationOrchestrator(make_config(), recording_engine).run()

    assert all(command == "migrate" for command, _ in recording_engine.calls)


def test_engine_failure_halts_remaining_scopes(workspace: Path, make_config) -> None:
    write_migration(workspace / "repos" / "user-ms" / "migrations" / "setup", "V1.0.0__users.sql")
    engine = RecordingEngine(fail_on="alpha-ms")
    orchestrator = MigrationOrchestrator(make_config(), engine)

    with pytest.raises(MigrationRunError) as excinfo:
        orchestrator.run()

    assert engine.calls == [("migrate", "core"), ("migrate", "alpha-ms")]
    assert excinfo.value.scope.label == "alpha-ms"
    assert [result.label for result in excinfo.value.completed] == ["core"]
    assert excinfo.value.cause.code == "VALIDATE_ERROR"
    assert orchestrator.state is RunState.FAILED


def test_run_holds_lock_around_scopes(make_config, recording_engine: RecordingEngine) -> None:
    @contextmanager
    def lock():
        recording_engine.events.append("lock")
        yield
        recording_engine.events.append("unlock")

    MigrationOrchestrator(make_config(), recording_engine, lock=lock).run()

    assert recording_engine.events == ["lock", "migrate", "migrate", "unlock"]


def test_nothing_to_migrate(tmp_path: Path, recording_engine: RecordingEngine, make_config) -> None:
    config = make_config(
        mode=OrchestrationMode.GLOBAL,
        repos_root=tmp_path / "empty",
        core_path=tmp_path / "no-core",
    )

    report = MigrationOrchestrator(config, recording_engine).run()

    assert report.scopes == []
    assert report.state is RunState.DONE
    assert recording_engine.calls == []


def test_service_filter_in_global_mode_is_rejected(make_config, recording_engine: RecordingEngine) -> None:
    config = make_config(mode=OrchestrationMode.GLOBAL, service_filter="gamma-ms")
    orchestrator = MigrationOrchestrator(config, recording_engine)

    with pytest.raises(RunConfigError):
        orchestrator.run()

    assert recording_engine.calls == []
    assert orchestrator.state is RunState.FAILED


def test_lock_failure_marks_run_failed(make_config, recording_engine: RecordingEngine) -> None:
    def lock():
        raise ConnectionRefusedError("database unavailable")

    orchestrator = MigrationOrchestrator(make_config(), recording_engine, lock=lock)

    with pytest.raises(ConnectionRefusedError):
        orchestrator.run()

    assert recording_engine.calls == []
    assert orchestrator.state is RunState.FAILED
