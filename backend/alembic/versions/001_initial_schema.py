"""initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# create_type=False prevents create_table from auto-creating these
import_status_enum = postgresql.ENUM(
    "queued", "processing", "ready_for_review", "reviewing",
    "completed", "failed", "cancelled",
    name="import_status_enum",
    create_type=False,
)

import_kind_enum = postgresql.ENUM(
    "spreadsheet", "statement",
    name="import_kind_enum",
    create_type=False,
)


def upgrade() -> None:
    # Create enums explicitly with IF NOT EXISTS for idempotency
    op.execute(sa.text(
        "DO $$ BEGIN "
        "CREATE TYPE import_status_enum AS ENUM "
        "('queued','processing','ready_for_review','reviewing',"
        "'completed','failed','cancelled'); "
        "EXCEPTION WHEN duplicate_object THEN NULL; "
        "END $$;"
    ))
    op.execute(sa.text(
        "DO $$ BEGIN "
        "CREATE TYPE import_kind_enum AS ENUM ('spreadsheet','statement'); "
        "EXCEPTION WHEN duplicate_object THEN NULL; "
        "END $$;"
    ))

    op.create_table(
        "categories",
        sa.Column("id", sa.UUID(), nullable=False, default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("color", sa.String(7), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_categories_user_id", "categories", ["user_id"])
    op.create_index("ix_categories_name", "categories", ["name"])

    op.create_table(
        "import_jobs",
        sa.Column("id", sa.UUID(), nullable=False, default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("status", import_status_enum, nullable=False, server_default=sa.text("'queued'")),
        sa.Column("kind", import_kind_enum, nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("file_type", sa.String(255), nullable=False),
        sa.Column("payload", sa.LargeBinary(), nullable=True),
        sa.Column("parsed_rows", sa.JSON(), nullable=True),
        sa.Column("warnings", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("error_message", sa.String(1000), nullable=True),
        sa.Column("progress_percent", sa.Float(), nullable=True),
        sa.Column("status_message", sa.String(500), nullable=True),
        sa.Column("total_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("imported_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("skipped_duplicates", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processing_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewing_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_import_jobs_user_id", "import_jobs", ["user_id"])
    op.create_index("ix_import_jobs_status", "import_jobs", ["status"])
    op.create_index("ix_import_jobs_created_at", "import_jobs", ["created_at"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.UUID(), nullable=False, default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("exchange_rate", sa.Float(), nullable=False, server_default=sa.text("1.0")),
        sa.Column("amount_usd_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("description", sa.String(1000), nullable=True),
        sa.Column("category_id", sa.UUID(), nullable=True),
        sa.Column("pricing_source", sa.String(50), nullable=False, server_default=sa.text("'IMPORT'")),
        sa.Column("import_job_id", sa.UUID(), nullable=True),
        sa.Column("is_amortized_parent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_amortized_child", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("parent_id", sa.UUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["category_id"], ["categories.id"]),
        sa.ForeignKeyConstraint(["import_job_id"], ["import_jobs.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["parent_id"], ["expenses.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_expenses_user_id", "expenses", ["user_id"])
    op.create_index("ix_expenses_date", "expenses", ["date"])
    op.create_index("ix_expenses_category_id", "expenses", ["category_id"])
    op.create_index("ix_expenses_parent_id", "expenses", ["parent_id"])


def downgrade() -> None:
    op.drop_table("expenses")
    op.drop_table("import_jobs")
    op.drop_table("categories")
    op.execute(sa.text("DROP TYPE IF EXISTS import_kind_enum"))
    op.execute(sa.text("DROP TYPE IF EXISTS import_status_enum"))
