"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-18

Databases created with SQLModel's create_all are stamped at this revision
instead of running it.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("name", sa.VARCHAR(), nullable=False),
        sa.Column("key_hash", sa.VARCHAR(), nullable=False),
        sa.Column("key_fingerprint", sa.VARCHAR(), nullable=False),
        sa.Column("tier", sa.VARCHAR(), nullable=False, server_default="basic"),
        sa.Column("wallet_balance", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("loyalty_points", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("task_points", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("rewards_level", sa.VARCHAR(), nullable=False, server_default="bronze"),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_key_fingerprint", "users", ["key_fingerprint"])

    op.create_table(
        "perks",
        sa.Column("id", sa.INTEGER(), nullable=False),
        sa.Column("user_id", sa.VARCHAR(), nullable=False),
        sa.Column("type", sa.VARCHAR(), nullable=False),
        sa.Column("value", sa.FLOAT(), nullable=False, server_default="1"),
        sa.Column("expires_at", sa.DATETIME(), nullable=False),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_perks_user_id", "perks", ["user_id"])

    op.create_table(
        "wallet_ledger",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("user_id", sa.VARCHAR(), nullable=False),
        sa.Column("amount", sa.INTEGER(), nullable=False),
        sa.Column("reason", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_wallet_ledger_user_id", "wallet_ledger", ["user_id"])
    op.create_index("ix_wallet_ledger_user_created", "wallet_ledger", ["user_id", "created_at"])

    op.create_table(
        "categories",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("name", sa.VARCHAR(), nullable=False),
        sa.Column("min_price", sa.INTEGER(), nullable=True),
        sa.Column("max_price", sa.INTEGER(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "platform_settings",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("platform_fee_pct", sa.FLOAT(), nullable=False, server_default="10.0"),
        sa.Column("default_radius_km", sa.FLOAT(), nullable=False, server_default="3.0"),
        sa.Column("updated_at", sa.DATETIME(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("requester_id", sa.VARCHAR(), nullable=False),
        sa.Column("assigned_tasker_id", sa.VARCHAR(), nullable=True),
        sa.Column("title", sa.VARCHAR(), nullable=False),
        sa.Column("description", sa.VARCHAR(), nullable=True),
        sa.Column("category_id", sa.VARCHAR(), nullable=False),
        sa.Column("category_name", sa.VARCHAR(), nullable=True),
        sa.Column("price", sa.INTEGER(), nullable=False),
        sa.Column("duration_min", sa.INTEGER(), nullable=True),
        sa.Column("required_skills", sa.VARCHAR(), nullable=True),
        sa.Column("bidding_enabled", sa.BOOLEAN(), nullable=False, server_default="0"),
        sa.Column("quick_accept", sa.BOOLEAN(), nullable=False, server_default="1"),
        sa.Column("allowed_tier", sa.VARCHAR(), nullable=False, server_default="all"),
        sa.Column("lat", sa.FLOAT(), nullable=False),
        sa.Column("lng", sa.FLOAT(), nullable=False),
        sa.Column("radius_km", sa.FLOAT(), nullable=True),
        sa.Column("status", sa.VARCHAR(), nullable=False, server_default="posted"),
        sa.Column("escrow_ref", sa.VARCHAR(), nullable=True),
        sa.Column("escrow_held", sa.BOOLEAN(), nullable=False, server_default="0"),
        sa.Column("proof_url", sa.VARCHAR(), nullable=True),
        sa.Column("total_expenses", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("is_scheduled", sa.BOOLEAN(), nullable=False, server_default="0"),
        sa.Column("scheduled_for", sa.DATETIME(), nullable=True),
        sa.Column("bid_window_ends_at", sa.DATETIME(), nullable=True),
        sa.Column("is_recurring", sa.BOOLEAN(), nullable=False, server_default="0"),
        sa.Column("recur_frequency", sa.VARCHAR(), nullable=True),
        sa.Column("recur_day_of_week", sa.INTEGER(), nullable=True),
        sa.Column("recur_time_of_day", sa.VARCHAR(), nullable=True),
        sa.Column("recur_end_date", sa.DATETIME(), nullable=True),
        sa.Column("next_occurrence", sa.DATETIME(), nullable=True),
        sa.Column("parent_task_id", sa.VARCHAR(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("accepted_at", sa.DATETIME(), nullable=True),
        sa.Column("started_at", sa.DATETIME(), nullable=True),
        sa.Column("completed_at", sa.DATETIME(), nullable=True),
        sa.ForeignKeyConstraint(["requester_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["assigned_tasker_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["category_id"], ["categories.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tasks_requester_id", "tasks", ["requester_id"])
    op.create_index("ix_tasks_assigned_tasker_id", "tasks", ["assigned_tasker_id"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_is_scheduled", "tasks", ["is_scheduled"])
    op.create_index("ix_tasks_bid_window_ends_at", "tasks", ["bid_window_ends_at"])
    op.create_index("ix_tasks_is_recurring", "tasks", ["is_recurring"])
    op.create_index("ix_tasks_next_occurrence", "tasks", ["next_occurrence"])
    op.create_index("ix_tasks_parent_task_id", "tasks", ["parent_task_id"])
    op.create_index("ix_tasks_created_at", "tasks", ["created_at"])
    op.create_index("ix_tasks_accepted_at", "tasks", ["accepted_at"])
    op.create_index("ix_tasks_status_created_at", "tasks", ["status", "created_at"])
    op.create_index("ix_tasks_status_lat_lng", "tasks", ["status", "lat", "lng"])

    op.create_table(
        "offers",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=False),
        sa.Column("tasker_id", sa.VARCHAR(), nullable=False),
        sa.Column("proposed_price", sa.INTEGER(), nullable=False),
        sa.Column("message", sa.VARCHAR(), nullable=True),
        sa.Column("status", sa.VARCHAR(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.ForeignKeyConstraint(["tasker_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_offers_task_id", "offers", ["task_id"])
    op.create_index("ix_offers_tasker_id", "offers", ["tasker_id"])
    op.create_index("ix_offers_status", "offers", ["status"])
    op.create_index(
        "uq_offers_pending_per_tasker",
        "offers",
        ["task_id", "tasker_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=False),
        sa.Column("amount", sa.INTEGER(), nullable=False),
        sa.Column("platform_fee", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("status", sa.VARCHAR(), nullable=False, server_default="held"),
        sa.Column("provider_ref", sa.VARCHAR(), nullable=True),
        sa.Column("created_at", sa.DATETIME(), nullable=False),
        sa.Column("updated_at", sa.DATETIME(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id"),
    )
    op.create_index("ix_transactions_status", "transactions", ["status"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.VARCHAR(), nullable=False),
        sa.Column("task_id", sa.VARCHAR(), nullable=False),
        sa.Column("tasker_id", sa.VARCHAR(), nullable=False),
        sa.Column("description", sa.VARCHAR(), nullable=False),
        sa.Column("amount", sa.INTEGER(), nullable=False),
        sa.Column("receipt_url", sa.VARCHAR(), nullable=True),
        sa.Column("status", sa.VARCHAR(), nullable=False, server_default="pending"),
        sa.Column("submitted_at", sa.DATETIME(), nullable=False),
        sa.Column("reviewed_at", sa.DATETIME(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.ForeignKeyConstraint(["tasker_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_expenses_task_id", "expenses", ["task_id"])


def downgrade() -> None:
    op.drop_table("expenses")
    op.drop_table("transactions")
    op.drop_index("uq_offers_pending_per_tasker", table_name="offers")
    op.drop_table("offers")
    op.drop_table("tasks")
    op.drop_table("platform_settings")
    op.drop_table("categories")
    op.drop_table("wallet_ledger")
    op.drop_table("perks")
    op.drop_table("users")
