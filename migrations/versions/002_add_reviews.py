"""Add reviews table and rating aggregates on users.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

Either party of a paid task can rate the other once. Uses batch mode for
the users columns so SQLite can add them.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.add_column(sa.Column("rating_avg", sa.FLOAT(), nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("rating_count", sa.INTEGER(), nullable=False, server_default="0"))

    op.create_table(
        "reviews",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=False),
        sa.Column("reviewer_id", sa.VARCHAR(), nullable=False),
        sa.Column("reviewee_id", sa.VARCHAR(), nullable=False),
        sa.Column("rating", sa.INTEGER(), nullable=False),
        sa.Column("comment", sa.VARCHAR(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.ForeignKeyConstraint(["reviewer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["reviewee_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reviews_task_id", "reviews", ["task_id"])
    op.create_index("ix_reviews_reviewee_id", "reviews", ["reviewee_id"])
    op.create_index("uq_reviews_task_reviewer", "reviews", ["task_id", "reviewer_id"], unique=True)


def downgrade() -> None:
    op.drop_index("uq_reviews_task_reviewer", table_name="reviews")
    op.drop_index("ix_reviews_reviewee_id", table_name="reviews")
    op.drop_index("ix_reviews_task_id", table_name="reviews")
    op.drop_table("reviews")
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.drop_column("rating_count")
        batch_op.drop_column("rating_avg")
