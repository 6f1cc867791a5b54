"""create crm clients, deals, activities and notifications

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_client",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("nit", sa.String(length=32), nullable=True),
        sa.Column("sector", sa.String(length=16), nullable=False, server_default="Private"),
        sa.Column("assigned_advisor_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id", name="pk_crm_client"),
        sa.UniqueConstraint("organization_id", "nit", name="uq_crm_client_organization_nit"),
    )
    op.create_index("ix_crm_client_organization_id", "crm_client", ["organization_id"], unique=False)
    op.create_index("ix_crm_client_assigned_advisor_id", "crm_client", ["assigned_advisor_id"], unique=False)

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_cost", sa.Numeric(18, 2), nullable=True),
        sa.Column("unit_price", sa.Numeric(18, 2), nullable=True),
        sa.Column("profit_margin", sa.Numeric(7, 2), nullable=True),
        sa.Column("sector", sa.String(length=16), nullable=False, server_default="Private"),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="CONTACTED"),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="RESTRICT", name="fk_crm_deal_client_id_crm_client"),
        sa.PrimaryKeyConstraint("id", name="pk_crm_deal"),
    )
    op.create_index(
        "ix_crm_deal_scope_filter",
        "crm_deal",
        ["organization_id", "owner_id", "status"],
        unique=False,
    )
    op.create_index("ix_crm_deal_client_id", "crm_deal", ["client_id"], unique=False)
    op.create_index("ix_crm_deal_stage", "crm_deal", ["stage"], unique=False)

    op.create_table(
        "crm_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responsible_user_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="RESTRICT", name="fk_crm_activity_deal_id_crm_deal"),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="RESTRICT", name="fk_crm_activity_client_id_crm_client"),
        sa.PrimaryKeyConstraint("id", name="pk_crm_activity"),
    )
    op.create_index("ix_crm_activity_deal_id", "crm_activity", ["deal_id"], unique=False)

    op.create_table(
        "crm_notification",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default="info"),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("entity_id", sa.Uuid(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_crm_notification"),
    )
    op.create_index(
        "ix_crm_notification_user_id",
        "crm_notification",
        ["organization_id", "user_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_notification_user_id", table_name="crm_notification")
    op.drop_table("crm_notification")
    op.drop_index("ix_crm_activity_deal_id", table_name="crm_activity")
    op.drop_table("crm_activity")
    op.drop_index("ix_crm_deal_stage", table_name="crm_deal")
    op.drop_index("ix_crm_deal_client_id", table_name="crm_deal")
    op.drop_index("ix_crm_deal_scope_filter", table_name="crm_deal")
    op.drop_table("crm_deal")
    op.drop_index("ix_crm_client_assigned_advisor_id", table_name="crm_client")
    op.drop_index("ix_crm_client_organization_id", table_name="crm_client")
    op.drop_table("crm_client")
