from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from ..patch_helpers import LINK_TABLE, check_precondition, set_schema_version

version = 5
description = "rename local_id to wiki_id"


def upgrade(op: Operations) -> None:
    check_precondition(op, version - 1)
    op.execute(sa.text(f"ALTER TABLE {LINK_TABLE} RENAME COLUMN local_id TO wiki_id"))
    set_schema_version(op, version)
