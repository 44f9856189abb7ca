from __future__ import annotations

from alembic.operations import Operations

from ..patch_helpers import LEGACY_TABLE, LINK_TABLE, check_precondition, set_schema_version

version = 2
description = "rename original table to link table"


def upgrade(op: Operations) -> None:
    check_precondition(op, version - 1)
    op.rename_table(LEGACY_TABLE, LINK_TABLE)
    set_schema_version(op, version)
