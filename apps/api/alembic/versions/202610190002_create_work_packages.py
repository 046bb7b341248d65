"""create work packages, phases, items, collateral and templates

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "work_package",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("total_cost", sa.Numeric(18, 2), nullable=True),
        sa.Column("effective_start_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_account.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_work_package_contact_id", "work_package", ["contact_id"], unique=False)
    op.create_index("ix_work_package_company_id", "work_package", ["company_id"], unique=False)

    op.create_table(
        "work_package_phase",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("work_package_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("total_estimated_hours", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("phase_total_duration", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_start_date", sa.Date(), nullable=True),
        sa.Column("estimated_end_date", sa.Date(), nullable=True),
        sa.Column("actual_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="not_started"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["work_package_id"], ["work_package.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("work_package_id", "position", name="uq_work_package_phase_position"),
    )
    op.create_index(
        "ix_work_package_phase_identity",
        "work_package_phase",
        ["work_package_id", "name", "position"],
        unique=False,
    )

    op.create_table(
        "work_package_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("work_package_id", sa.Uuid(), nullable=False),
        sa.Column("phase_id", sa.Uuid(), nullable=False),
        sa.Column("deliverable_type", sa.String(length=128), nullable=False),
        sa.Column("deliverable_label", sa.Text(), nullable=False),
        sa.Column("deliverable_description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_of_measure", sa.String(length=32), nullable=False, server_default="day"),
        sa.Column("estimated_hours_each", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="NOT_STARTED"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["work_package_id"], ["work_package.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["phase_id"], ["work_package_phase.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("phase_id", "deliverable_label", name="uq_work_package_item_label"),
    )
    op.create_index(
        "ix_work_package_item_identity",
        "work_package_item",
        ["work_package_id", "phase_id", "deliverable_label"],
        unique=False,
    )

    op.create_table(
        "work_collateral",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("item_id", sa.Uuid(), nullable=False),
        sa.Column("collateral_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("content_json", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="IN_PROGRESS"),
        sa.Column("review_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["work_package_item.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_work_collateral_item_status", "work_collateral", ["item_id", "status"], unique=False)

    op.create_table(
        "phase_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_phase_template_name"),
    )
    op.create_table(
        "deliverable_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deliverable_type", sa.String(length=128), nullable=False),
        sa.Column("deliverable_label", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("default_quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("default_unit_of_measure", sa.String(length=32), nullable=False, server_default="day"),
        sa.Column("default_estimated_hours_each", sa.Numeric(10, 2), nullable=False, server_default="8"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deliverable_type", name="uq_deliverable_template_type"),
    )


def downgrade() -> None:
    op.drop_table("deliverable_template")
    op.drop_table("phase_template")
    op.drop_index("ix_work_collateral_item_status", table_name="work_collateral")
    op.drop_table("work_collateral")
    op.drop_index("ix_work_package_item_identity", table_name="work_package_item")
    op.drop_table("work_package_item")
    op.drop_index("ix_work_package_phase_identity", table_name="work_package_phase")
    op.drop_table("work_package_phase")
    op.drop_index("ix_work_package_company_id", table_name="work_package")
    op.drop_index("ix_work_package_contact_id", table_name="work_package")
    op.drop_table("work_package")
