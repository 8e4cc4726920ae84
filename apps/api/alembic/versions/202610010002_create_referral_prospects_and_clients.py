"""create referral prospects and clients

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "referral_prospect",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_name", sa.String(length=255), nullable=False),
        sa.Column("contact_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("tax_id", sa.String(length=14), nullable=False),
        sa.Column("employee_bucket", sa.String(length=16), nullable=True),
        sa.Column("segment", sa.String(length=32), nullable=False),
        sa.Column("partner_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("validation_notes", sa.Text(), nullable=True),
        sa.Column("is_approved", sa.Boolean(), nullable=True),
        sa.Column("validated_by", sa.String(length=255), nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_by", sa.String(length=255), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_referral_prospect_partner_id", "referral_prospect", ["partner_id"])
    op.create_index("ix_referral_prospect_status", "referral_prospect", ["status"])
    op.create_index(
        "uq_referral_prospect_active_email_tax_id",
        "referral_prospect",
        ["email", "tax_id"],
        unique=True,
        postgresql_where=sa.text("status != 'rejected'"),
        sqlite_where=sa.text("status != 'rejected'"),
    )

    op.create_table(
        "referral_client",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("contact_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("tax_id", sa.String(length=14), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="prospecting"),
        sa.Column("temperature", sa.String(length=16), nullable=False, server_default="warm"),
        sa.Column("total_lives", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("partner_id", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("prospect_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["prospect_id"], ["referral_prospect.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_referral_client_email"),
        sa.UniqueConstraint("tax_id", name="uq_referral_client_tax_id"),
        sa.UniqueConstraint("prospect_id", name="uq_referral_client_prospect_id"),
    )
    op.create_index("ix_referral_client_partner_id", "referral_client", ["partner_id"])


def downgrade() -> None:
    op.drop_index("ix_referral_client_partner_id", table_name="referral_client")
    op.drop_table("referral_client")
    op.drop_index("uq_referral_prospect_active_email_tax_id", table_name="referral_prospect")
    op.drop_index("ix_referral_prospect_status", table_name="referral_prospect")
    op.drop_index("ix_referral_prospect_partner_id", table_name="referral_prospect")
    op.drop_table("referral_prospect")
