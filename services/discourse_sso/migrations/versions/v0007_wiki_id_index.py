from __future__ import annotations

from alembic.operations import Operations

from ..patch_helpers import LINK_TABLE, WIKI_ID_INDEX, check_precondition, set_schema_version

version = 7
description = "unique index on wiki_id"


def upgrade(op: Operations) -> None:
    check_precondition(op, version - 1)
    op.create_index(WIKI_ID_INDEX, LINK_TABLE, ["wiki_id"], unique=True)
    set_schema_version(op, version)
