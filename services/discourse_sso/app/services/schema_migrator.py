"""
Versioned schema management for the link and cache tables.

The installed version lives in the metadata table under ``schemaVersion``.
A blank database gets the latest layout in one step; an older one gets
every numbered patch from ``current + 1`` through the required version,
each in its own transaction, so an interrupted run resumes where it stopped.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from ...migrations import current_schema
from ...migrations.versions import (
    v0001_meta_table,
    v0002_rename_link_table,
    v0003_local_id_index,
    v0004_rename_discourse_id,
    v0005_rename_wiki_id,
    v0006_drop_local_id_index,
    v0007_wiki_id_index,
    v0008_discourse_user_table,
)
from ..core.errors import (
    BrokenMetadataError,
    FutureSchemaError,
    PatchPreconditionFailed,
    SchemaError,
    SchemaOutdatedError,
)
from ..core.logging import get_logger
from ..models.links import LEGACY_TABLE, META_TABLE, MetaEntry

logger = get_logger(__name__)


@dataclass(frozen=True)
class SchemaPatch:
    version: int
    description: str
    upgrade: Callable[[Operations], None]


PATCHES: tuple[SchemaPatch, ...] = tuple(
    SchemaPatch(module.version, module.description, module.upgrade)
    for module in (
        v0001_meta_table,
        v0002_rename_link_table,
        v0003_local_id_index,
        v0004_rename_discourse_id,
        v0005_rename_wiki_id,
        v0006_drop_local_id_index,
        v0007_wiki_id_index,
        v0008_discourse_user_table,
    )
)

SCHEMA_VERSION = PATCHES[-1].version


def operations_for(connection: Connection) -> Operations:
    return Operations(MigrationContext.configure(connection))


class SchemaMigrator:
    def __init__(self, engine: Engine, patches: Sequence[SchemaPatch] = PATCHES) -> None:
        self._engine = engine
        self._patches = tuple(patches)
        expected = list(range(1, len(self._patches) + 1))
        if [p.version for p in self._patches] != expected:
            raise SchemaError("Schema patches must be numbered 1..N without gaps")
        if self._patches[-1].version != current_schema.version:
            raise SchemaError(
                f"Fresh-install layout is version {current_schema.version}, "
                f"but the patch chain ends at {self._patches[-1].version}"
            )

    @property
    def latest_version(self) -> int:
        return self._patches[-1].version

    def current_version(self) -> int | None:
        """Installed version; None for a blank database, 0 for the legacy layout."""
        with self._engine.connect() as connection:
            inspector = sa.inspect(connection)
            if not inspector.has_table(META_TABLE):
                return 0 if inspector.has_table(LEGACY_TABLE) else None
            raw = connection.execute(
                select(MetaEntry.m_value).where(MetaEntry.m_key == "schemaVersion")
            ).scalar_one_or_none()
        if raw is None:
            raise BrokenMetadataError(f"{META_TABLE} has no schemaVersion row")
        try:
            return int(raw)
        except ValueError as exc:
            raise BrokenMetadataError(f"Unreadable schemaVersion '{raw}'") from exc

    def reconcile(self, required_version: int | None = None) -> int:
        """Bring the database to ``required_version`` and return the installed version."""
        required = self.latest_version if required_version is None else required_version
        if not 1 <= required <= self.latest_version:
            raise SchemaError(
                f"Cannot provide schema version {required}; "
                f"known versions are 1..{self.latest_version}"
            )

        current = self.current_version()
        if current is None:
            if required != self.latest_version:
                raise SchemaError(
                    f"A blank database can only be installed at version {self.latest_version}"
                )
            self._install_latest()
            return self.latest_version
        if current == required:
            logger.info("schema.up_to_date", version=current)
            return current
        if current > required:
            raise FutureSchemaError(current, required)

        for patch in self._patches[current:required]:
            self._apply(patch)
        return required

    def ensure_current(self, required_version: int | None = None) -> None:
        """Refuse to serve against a schema other than the one this code needs."""
        required = self.latest_version if required_version is None else required_version
        current = self.current_version()
        if current is None or current < required:
            raise SchemaOutdatedError(
                f"Database schema version is {current}, code requires {required}; "
                "run the schema update first"
            )
        if current > required:
            raise FutureSchemaError(current, required)

    def _install_latest(self) -> None:
        logger.info("schema.installing", version=self.latest_version)
        with self._engine.begin() as connection:
            current_schema.install(operations_for(connection))
        logger.info("schema.installed", version=self.latest_version)

    def _apply(self, patch: SchemaPatch) -> None:
        logger.info("schema.patch_applying", version=patch.version, description=patch.description)
        try:
            with self._engine.begin() as connection:
                patch.upgrade(operations_for(connection))
        except IntegrityError as exc:
            logger.error("schema.patch_precondition_failed", version=patch.version)
            raise PatchPreconditionFailed(
                f"Patch v{patch.version:04d} expects schema version {patch.version - 1}"
            ) from exc
        logger.info("schema.patch_applied", version=patch.version)


def describe_schema(engine: Engine) -> dict[str, Any]:
    """Structural summary of our tables, independent of how they were created."""
    inspector = sa.inspect(engine)
    summary: dict[str, Any] = {}
    for table in sorted(inspector.get_table_names()):
        if not table.startswith(LEGACY_TABLE):
            continue
        summary[table] = {
            "columns": [
                (col["name"], str(col["type"]), bool(col["nullable"]))
                for col in inspector.get_columns(table)
            ],
            "primary_key": tuple(inspector.get_pk_constraint(table)["constrained_columns"]),
            "indexes": sorted(
                (ix["name"], tuple(ix["column_names"]), bool(ix["unique"]))
                for ix in inspector.get_indexes(table)
            ),
        }
    return summary
