"""Fresh install of the latest layout in a single step."""
from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from .patch_helpers import (
    LINK_TABLE,
    META_TABLE,
    WIKI_ID_INDEX,
    create_meta_table,
    create_user_table,
)

version = 8


def install(op: Operations) -> None:
    create_meta_table(op)
    op.create_table(
        LINK_TABLE,
        sa.Column("discourse_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("wiki_id", sa.Integer(), nullable=False),
    )
    op.create_index(WIKI_ID_INDEX, LINK_TABLE, ["wiki_id"], unique=True)
    create_user_table(op)
    op.execute(
        sa.text(
            f"INSERT INTO {META_TABLE} (m_key, m_value) "
            f"VALUES ('schemaVersion', '{version}')"
        )
    )
