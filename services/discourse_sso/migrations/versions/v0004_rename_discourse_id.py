from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from ..patch_helpers import LINK_TABLE, check_precondition, set_schema_version

version = 4
description = "rename external_id to discourse_id"


def upgrade(op: Operations) -> None:
    check_precondition(op, version - 1)
    op.execute(sa.text(f"ALTER TABLE {LINK_TABLE} RENAME COLUMN external_id TO discourse_id"))
    set_schema_version(op, version)
