"""service integrations

Revision ID: 0001_service_integrations
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_service_integrations"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        # Tenant replication target; integration tables are created here.
        sa.Column("replication_schema", sa.String(), nullable=False, server_default="public"),
        sa.Column("readonly_connection_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "service_integrations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("opaque_id", sa.String(), nullable=False, unique=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column(
            "organization_id",
            sa.Integer(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("service_name", sa.String(), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("api_url", sa.Text(), nullable=False, server_default=""),
        # Credential columns hold Fernet tokens, never plaintext.
        sa.Column("webhook_secret", sa.Text(), nullable=False, server_default=""),
        sa.Column("backfill_key", sa.Text(), nullable=False, server_default=""),
        sa.Column("backfill_secret", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "depends_on_id",
            sa.Integer(),
            sa.ForeignKey("service_integrations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("last_backfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("organization_id", "table_name", name="uq_service_integrations_org_table"),
    )
    op.create_index(
        "ix_service_integrations_organization_id", "service_integrations", ["organization_id"]
    )
    op.create_index("ix_service_integrations_depends_on_id", "service_integrations", ["depends_on_id"])


def downgrade() -> None:
    op.drop_index("ix_service_integrations_depends_on_id", table_name="service_integrations")
    op.drop_index("ix_service_integrations_organization_id", table_name="service_integrations")
    op.drop_table("service_integrations")
    op.drop_table("organizations")
