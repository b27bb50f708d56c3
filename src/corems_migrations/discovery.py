"""Filesystem discovery of service migration directories and scope building.

Layout consumed from each installed service repository::

    repos/<service>/migrations/setup/      versioned migrations (required)
    repos/<service>/migrations/mockdata/   repeatable seed data (optional)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from .logging import event_fields
from .models import (
    BASELINE_VERSION,
    DEFAULT_SERVICE_SUFFIX,
    MigrationScope,
    RunConfig,
    ServiceMigrationSource,
)

logger = logging.getLogger(__name__)

SETUP_DIR = Path("migrations") / "setup"
MOCKDATA_DIR = Path("migrations") / "mockdata"
CORE_LABEL = "core"
GLOBAL_LABEL = "global"


def schema_name_for(name: str) -> str:
    """Map a service directory name to a schema identifier (``user-ms`` -> ``user_ms``)."""
    return name.replace("-", "_")


def _unsupported_path(path: Path) -> bool:
    # Flyway splits -locations on commas.
    return "," in str(path.resolve())


def discover_services(
    repos_root: Path,
    *,
    suffix: str = DEFAULT_SERVICE_SUFFIX,
) -> list[ServiceMigrationSource]:
    """Return the migratable services under ``repos_root``, ordered by directory name.

    A directory qualifies when it has a ``migrations/setup`` child and, when
    ``suffix`` is non-empty, its name ends with ``suffix``. Shared libraries and
    frontends without migrations are skipped silently.
    """
    if not repos_root.is_dir():
        logger.warning(
            "discovery.repos_root_missing",
            extra=event_fields(repos_root=str(repos_root)),
        )
        return []

    sources: list[ServiceMigrationSource] = []
    for entry in sorted(repos_root.iterdir(), key=lambda path: path.name):
        if not entry.is_dir():
            continue
        if suffix and not entry.name.endswith(suffix):
            logger.debug("discovery.skipped", extra=event_fields(scope=entry.name, reason="name"))
            continue
        setup_path = entry / SETUP_DIR
        if not setup_path.is_dir():
            logger.debug("discovery.skipped", extra=event_fields(scope=entry.name, reason="no_setup"))
            continue

        if _unsupported_path(setup_path):
            logger.warning(
                "discovery.unsupported_path",
                extra=event_fields(scope=entry.name, path=str(setup_path)),
            )
            continue

        mockdata_path = entry / MOCKDATA_DIR
        source = ServiceMigrationSource(
            name=entry.name,
            setup_path=setup_path.resolve(),
            mockdata_path=mockdata_path.resolve() if mockdata_path.is_dir() else None,
        )
        sources.append(source)
        logger.info(
            "discovery.service_found",
            extra=event_fields(scope=source.name, has_mockdata=source.mockdata_path is not None),
        )

    if not sources:
        logger.warning(
            "discovery.no_services",
            extra=event_fields(repos_root=str(repos_root)),
        )
    return sources


def _service_locations(source: ServiceMigrationSource, config: RunConfig) -> list[Path]:
    locations = [source.setup_path]
    if config.include_mockdata and source.mockdata_path is not None and source.mockdata_path.is_dir():
        locations.append(source.mockdata_path)
        logger.info("discovery.mockdata_included", extra=event_fields(scope=source.name))
    return locations


def build_scope(source: ServiceMigrationSource, config: RunConfig) -> MigrationScope:
    """Build the per-service scope: setup first, then mockdata when enabled."""
    return MigrationScope(
        label=source.name,
        schema_name=schema_name_for(source.name),
        locations=tuple(_service_locations(source, config)),
        history_table=config.history_table,
        clean_before_migrate=config.clean_before_migrate,
        baseline_version=BASELINE_VERSION,
    )


def build_core_scope(config: RunConfig) -> MigrationScope | None:
    """Build the scope for core migrations, or ``None`` when the core directory is absent."""
    if not config.core_path.is_dir():
        logger.warning(
            "discovery.core_missing",
            extra=event_fields(core_path=str(config.core_path)),
        )
        return None
    if _unsupported_path(config.core_path):
        logger.warning(
            "discovery.unsupported_path",
            extra=event_fields(scope=CORE_LABEL, path=str(config.core_path)),
        )
        return None
    return MigrationScope(
        label=CORE_LABEL,
        schema_name=config.global_schema,
        locations=(config.core_path.resolve(),),
        history_table=config.history_table,
        clean_before_migrate=config.clean_before_migrate,
        baseline_version=BASELINE_VERSION,
    )


def build_global_scope(
    sources: Sequence[ServiceMigrationSource],
    config: RunConfig,
) -> MigrationScope:
    """Aggregate core and every service into one scope sharing a single history table."""
    locations: list[Path] = []
    core_scope = build_core_scope(config)
    if core_scope is not None:
        locations.extend(core_scope.locations)
    for source in sources:
        locations.extend(_service_locations(source, config))

    return MigrationScope(
        label=GLOBAL_LABEL,
        schema_name=config.global_schema,
        locations=tuple(locations),
        history_table=config.history_table,
        clean_before_migrate=config.clean_before_migrate,
        baseline_version=BASELINE_VERSION,
    )


__all__ = [
    "CORE_LABEL",
    "GLOBAL_LABEL",
    "MOCKDATA_DIR",
    "SETUP_DIR",
    "build_core_scope",
    "build_global_scope",
    "build_scope",
    "discover_services",
    "schema_name_for",
]
