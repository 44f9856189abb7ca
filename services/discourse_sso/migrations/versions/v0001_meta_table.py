from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from ..patch_helpers import META_TABLE, create_meta_table

version = 1
description = "add metadata table"


def upgrade(op: Operations) -> None:
    # No precondition row possible yet: the metadata table is what we create.
    create_meta_table(op)
    op.execute(
        sa.text(f"INSERT INTO {META_TABLE} (m_key, m_value) VALUES ('schemaVersion', '1')")
    )
