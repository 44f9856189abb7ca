from __future__ import annotations

from alembic.operations import Operations

from ..patch_helpers import check_precondition, create_user_table, set_schema_version

version = 8
description = "add cache table for Discourse user records"


def upgrade(op: Operations) -> None:
    check_precondition(op, version - 1)
    create_user_table(op)
    set_schema_version(op, version)
