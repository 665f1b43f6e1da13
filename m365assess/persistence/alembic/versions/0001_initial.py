"""initial customers and assessments

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_name", sa.String(), nullable=False),
        sa.Column("tenant_domain", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("consent_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("consented_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_date", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_assessment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_assessments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("app_registration", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_customers_tenant_domain", "customers", ["tenant_domain"])
    op.create_index("ix_customers_tenant_id", "customers", ["tenant_id"])
    op.create_index("ix_customers_status", "customers", ["status"])
    # Case-insensitive domain uniqueness for customers that are not soft-deleted.
    op.create_index(
        "uq_customers_active_domain",
        "customers",
        [sa.text("lower(tenant_domain)")],
        unique=True,
        postgresql_where=sa.text("status <> 'deleted'"),
    )

    op.create_table(
        "assessments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "customer_id",
            sa.String(),
            sa.ForeignKey("customers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="completed"),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("categories", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("metrics", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("recommendations", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_date", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_date", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_assessments_customer_created",
        "assessments",
        ["customer_id", "created_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_assessments_customer_created", table_name="assessments")
    op.drop_table("assessments")
    op.drop_index("uq_customers_active_domain", table_name="customers")
    op.drop_index("ix_customers_status", table_name="customers")
    op.drop_index("ix_customers_tenant_id", table_name="customers")
    op.drop_index("ix_customers_tenant_domain", table_name="customers")
    op.drop_table("customers")
