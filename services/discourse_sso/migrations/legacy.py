"""The original, unversioned layout (schema version 0)."""
from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from .patch_helpers import LEGACY_TABLE


def create_legacy_table(op: Operations) -> None:
    op.create_table(
        LEGACY_TABLE,
        sa.Column("external_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("local_id", sa.Integer(), nullable=False),
    )
