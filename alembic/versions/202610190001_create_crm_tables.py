"""create crm tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_user",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username", name="uq_crm_user_username"),
    )

    op.create_table(
        "crm_category",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_crm_category_name"),
    )

    op.create_table(
        "crm_customer",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company", sa.String(length=100), nullable=False),
        sa.Column("address", sa.String(length=200), nullable=False),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("level", sa.String(length=2), nullable=False, server_default="L1"),
        sa.Column("other_sales", sa.String(length=50), nullable=True),
        sa.Column("next_time", sa.Date(), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["category_id"], ["crm_category.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["user_id"], ["crm_user.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_customer_user_id", "crm_customer", ["user_id"], unique=False)
    op.create_index("ix_crm_customer_user_next_time", "crm_customer", ["user_id", "next_time"], unique=False)
    op.create_index(
        "ix_crm_customer_user_company_address",
        "crm_customer",
        ["user_id", "company", "address"],
        unique=False,
    )
    op.create_index("ix_crm_customer_category_id", "crm_customer", ["category_id"], unique=False)

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["crm_customer.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_customer_id", "crm_contact", ["customer_id"], unique=False)

    op.create_table(
        "crm_development_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("log_date", sa.Date(), nullable=False),
        sa.Column("method", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["crm_customer.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_development_log_customer_date",
        "crm_development_log",
        ["customer_id", "log_date"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_development_log_customer_date", table_name="crm_development_log")
    op.drop_table("crm_development_log")
    op.drop_index("ix_crm_contact_customer_id", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_index("ix_crm_customer_category_id", table_name="crm_customer")
    op.drop_index("ix_crm_customer_user_company_address", table_name="crm_customer")
    op.drop_index("ix_crm_customer_user_next_time", table_name="crm_customer")
    op.drop_index("ix_crm_customer_user_id", table_name="crm_customer")
    op.drop_table("crm_customer")
    op.drop_table("crm_category")
    op.drop_table("crm_user")
