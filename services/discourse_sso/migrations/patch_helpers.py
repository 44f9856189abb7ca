"""Shared statements for the numbered schema patches.

Every patch after the first starts with ``check_precondition`` and ends with
``set_schema_version``. The precondition inserts a row whose value is NULL
unless the stored version matches, so a patch run against the wrong
starting state hits the NOT NULL constraint before it changes anything.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from ..app.models.links import (  # noqa: F401
    LEGACY_TABLE,
    LINK_TABLE,
    META_TABLE,
    USER_TABLE,
    WIKI_ID_INDEX,
)

# Only the v3 to v5 layouts have this index.
LOCAL_ID_INDEX = "discourse_sso_consumer_link_local_id"

PRECONDITION_KEY = "CheckSchemaVersionPrecondition"


def check_precondition(op: Operations, expected_version: int) -> None:
    op.execute(
        sa.text(
            f"INSERT INTO {META_TABLE} (m_key, m_value) "
            f"SELECT '{PRECONDITION_KEY}', "
            f"(SELECT m_value FROM {META_TABLE} "
            f"WHERE m_key = 'schemaVersion' AND m_value = '{int(expected_version)}')"
        )
    )
    op.execute(sa.text(f"DELETE FROM {META_TABLE} WHERE m_key = '{PRECONDITION_KEY}'"))


def set_schema_version(op: Operations, version: int) -> None:
    op.execute(
        sa.text(
            f"UPDATE {META_TABLE} SET m_value = '{int(version)}' "
            "WHERE m_key = 'schemaVersion'"
        )
    )


def create_meta_table(op: Operations) -> None:
    op.create_table(
        META_TABLE,
        sa.Column("m_key", sa.String(length=255), primary_key=True),
        sa.Column("m_value", sa.Text(), nullable=False),
    )


def create_user_table(op: Operations) -> None:
    op.create_table(
        USER_TABLE,
        sa.Column("discourse_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("user_json", sa.Text(), nullable=False),
        sa.Column("last_update", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_event", sa.Text(), nullable=False),
        sa.Column("last_event_id", sa.Integer(), nullable=False),
    )
