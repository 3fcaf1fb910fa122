"""enable row level security on crm tables

Revision ID: 202610190003
Revises: 202610190002
Create Date: 2026-10-19 00:03:00
"""

from collections.abc import Sequence

from alembic import op


revision: str = "202610190003"
down_revision: str | None = "202610190002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

OWNED_TABLES = ("people", "organizations", "deals", "deal_history", "leads", "activities")
OWNER_CHECK = "user_id = current_setting('request.jwt.claim.sub', true)"


def upgrade() -> None:
    # only PostgreSQL enforces policies; the scoped client filters by owner everywhere else
    if op.get_bind().dialect.name != "postgresql":
        return

    for table in OWNED_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(f"CREATE POLICY {table}_owner_select ON {table} FOR SELECT USING ({OWNER_CHECK})")
        op.execute(f"CREATE POLICY {table}_owner_insert ON {table} FOR INSERT WITH CHECK ({OWNER_CHECK})")
        op.execute(
            f"CREATE POLICY {table}_owner_update ON {table} FOR UPDATE USING ({OWNER_CHECK}) WITH CHECK ({OWNER_CHECK})"
        )
        op.execute(f"CREATE POLICY {table}_owner_delete ON {table} FOR DELETE USING ({OWNER_CHECK})")


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return

    for table in OWNED_TABLES:
        for action in ("select", "insert", "update", "delete"):
            op.execute(f"DROP POLICY IF EXISTS {table}_owner_{action} ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
