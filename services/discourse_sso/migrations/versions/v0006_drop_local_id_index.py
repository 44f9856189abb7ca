from __future__ import annotations

from alembic.operations import Operations

from ..patch_helpers import LINK_TABLE, LOCAL_ID_INDEX, check_precondition, set_schema_version

version = 6
description = "drop index named after the old local_id column"


def upgrade(op: Operations) -> None:
    check_precondition(op, version - 1)
    op.drop_index(LOCAL_ID_INDEX, table_name=LINK_TABLE)
    set_schema_version(op, version)
