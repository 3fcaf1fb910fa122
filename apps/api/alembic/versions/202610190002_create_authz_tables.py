"""create authz tables and baseline roles

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "authz_role",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "authz_role_capability",
        sa.Column("role_id", sa.Uuid(), nullable=False),
        sa.Column("capability", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["authz_role.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("role_id", "capability"),
    )

    op.create_table(
        "authz_user_role",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("role_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["authz_role.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "role_id", name="uq_authz_user_role_pair"),
    )
    op.create_index("ix_authz_user_role_user_id", "authz_user_role", ["user_id"], unique=False)

    _seed_baseline()


def downgrade() -> None:
    op.drop_table("authz_user_role")
    op.drop_table("authz_role_capability")
    op.drop_table("authz_role")


def _seed_baseline() -> None:
    now = datetime.now(timezone.utc)

    role_ids = {
        "Admin": uuid.UUID("0d7a3c52-9f61-4b1e-8c1a-5f2e7b9d4a10"),
        "Sales": uuid.UUID("6b1e9a47-2c3d-4f58-9e07-a8b4c2d1e3f6"),
        "ReadOnly": uuid.UUID("c4f2e8a1-7b95-4d36-b0e2-1a9c8d7f6e54"),
    }

    role_table = sa.table(
        "authz_role",
        sa.column("id", sa.Uuid()),
        sa.column("name", sa.String()),
        sa.column("description", sa.Text()),
        sa.column("created_at", sa.DateTime(timezone=True)),
    )
    op.bulk_insert(
        role_table,
        [
            {"id": role_ids["Admin"], "name": "Admin", "description": "Every CRM capability", "created_at": now},
            {"id": role_ids["Sales"], "name": "Sales", "description": "Manage the sales pipeline", "created_at": now},
            {"id": role_ids["ReadOnly"], "name": "ReadOnly", "description": "Read own records only", "created_at": now},
        ],
    )

    capability_table = sa.table(
        "authz_role_capability",
        sa.column("role_id", sa.Uuid()),
        sa.column("capability", sa.String()),
        sa.column("created_at", sa.DateTime(timezone=True)),
    )
    sales_grants = ["person:*", "organization:*", "deal:*", "lead:*", "activity:*"]
    op.bulk_insert(
        capability_table,
        [{"role_id": role_ids["Admin"], "capability": "*", "created_at": now}]
        + [{"role_id": role_ids["Sales"], "capability": grant, "created_at": now} for grant in sales_grants],
    )
