"""Request fulfillment schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from site_procurement.db import create_schema


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TABLES = (
    "status_events",
    "document_counters",
    "purchase_orders",
    "cost_comparisons",
    "request_items",
    "inventory_items",
    "vendors",
    "actors",
)


class _AlembicDbAdapter:
    """Just enough of ``Database`` for the schema bootstrap helpers."""

    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params=None):
        if params is None:
            return self._connection.exec_driver_sql(sql)
        return self._connection.exec_driver_sql(sql, tuple(params))


def _resolve_backend(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    create_schema(_AlembicDbAdapter(connection, _resolve_backend(connection)))


def downgrade() -> None:
    for table in TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table}")
