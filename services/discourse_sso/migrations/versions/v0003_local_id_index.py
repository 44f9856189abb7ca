from __future__ import annotations

from alembic.operations import Operations

from ..patch_helpers import LINK_TABLE, LOCAL_ID_INDEX, check_precondition, set_schema_version

version = 3
description = "unique index on local_id"


def upgrade(op: Operations) -> None:
    check_precondition(op, version - 1)
    op.create_index(LOCAL_ID_INDEX, LINK_TABLE, ["local_id"], unique=True)
    set_schema_version(op, version)
