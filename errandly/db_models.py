"""SQLModel table definitions for Errandly."""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class TaskStatus(str, enum.Enum):
    posted = "posted"
    accepted = "accepted"
    in_progress = "in_progress"
    completed = "completed"
    paid = "paid"
    refunded = "refunded"
    cancelled = "cancelled"


ASSIGNED_STATUSES = (
    TaskStatus.accepted,
    TaskStatus.in_progress,
    TaskStatus.completed,
    TaskStatus.paid,
)
ACTIVE_STATUSES = (TaskStatus.accepted, TaskStatus.in_progress)


class OfferStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"


class TransactionStatus(str, enum.Enum):
    held = "held"
    released = "released"
    refunded = "refunded"


class ExpenseStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class AllowedTier(str, enum.Enum):
    all = "all"
    pro = "pro"


class UserTier(str, enum.Enum):
    basic = "basic"
    standard = "standard"
    pro = "pro"


class RewardsLevel(str, enum.Enum):
    bronze = "bronze"
    silver = "silver"
    gold = "gold"
    platinum = "platinum"


class PerkType(str, enum.Enum):
    reduced_commission = "reduced_commission"
    priority_listing = "priority_listing"
    top_badge = "top_badge"


class Frequency(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(primary_key=True)
    name: str
    key_hash: str
    key_fingerprint: str = Field(index=True)
    tier: UserTier = Field(default=UserTier.basic)
    wallet_balance: int = Field(default=0)
    loyalty_points: int = Field(default=0)
    task_points: int = Field(default=0)
    rewards_level: RewardsLevel = Field(default=RewardsLevel.bronze)
    rating_avg: float = Field(default=0.0)
    rating_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)


class Perk(SQLModel, table=True):
    __tablename__ = "perks"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    type: PerkType
    value: float = Field(default=1)
    expires_at: datetime
    created_at: datetime = Field(default_factory=_utcnow)


class WalletLedger(SQLModel, table=True):
    __tablename__ = "wallet_ledger"
    __table_args__ = (Index("ix_wallet_ledger_user_created", "user_id", "created_at"),)

    id: str = Field(primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    amount: int
    reason: str
    task_id: str | None = None  # kept after the task row is purged
    created_at: datetime = Field(default_factory=_utcnow)


class Category(SQLModel, table=True):
    __tablename__ = "categories"

    id: str = Field(primary_key=True)
    name: str
    min_price: int | None = None
    max_price: int | None = None


class PlatformSettings(SQLModel, table=True):
    __tablename__ = "platform_settings"

    id: str = Field(default="global", primary_key=True)
    platform_fee_pct: float = Field(default=10.0)
    default_radius_km: float = Field(default=3.0)
    updated_at: datetime = Field(default_factory=_utcnow)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_status_created_at", "status", "created_at"),
        Index("ix_tasks_status_lat_lng", "status", "lat", "lng"),
    )

    id: str = Field(primary_key=True)
    requester_id: str = Field(foreign_key="users.id", index=True)
    assigned_tasker_id: str | None = Field(default=None, foreign_key="users.id", index=True)
    title: str
    description: str | None = None
    category_id: str = Field(foreign_key="categories.id")
    category_name: str | None = None  # free text for the custom category
    price: int
    duration_min: int | None = None
    required_skills: str | None = None  # JSON-encoded list
    bidding_enabled: bool = Field(default=False)
    quick_accept: bool = Field(default=True)
    allowed_tier: AllowedTier = Field(default=AllowedTier.all)
    lat: float
    lng: float
    radius_km: float | None = None
    status: TaskStatus = Field(default=TaskStatus.posted, index=True)
    escrow_ref: str | None = None
    escrow_held: bool = Field(default=False)
    proof_url: str | None = None
    total_expenses: int = Field(default=0)
    is_scheduled: bool = Field(default=False, index=True)
    scheduled_for: datetime | None = None
    bid_window_ends_at: datetime | None = Field(default=None, index=True)
    is_recurring: bool = Field(default=False, index=True)
    recur_frequency: Frequency | None = None
    recur_day_of_week: int | None = None  # 0=Sunday .. 6=Saturday
    recur_time_of_day: str | None = None  # "HH:MM", UTC
    recur_end_date: datetime | None = None
    next_occurrence: datetime | None = Field(default=None, index=True)
    parent_task_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    accepted_at: datetime | None = Field(default=None, index=True)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Offer(SQLModel, table=True):
    __tablename__ = "offers"
    __table_args__ = (
        Index(
            "uq_offers_pending_per_tasker",
            "task_id",
            "tasker_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: str = Field(primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    tasker_id: str = Field(foreign_key="users.id", index=True)
    proposed_price: int
    message: str | None = None
    status: OfferStatus = Field(default=OfferStatus.pending, index=True)
    created_at: datetime = Field(default_factory=_utcnow)


class Transaction(SQLModel, table=True):
    __tablename__ = "transactions"

    id: str = Field(primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", unique=True)
    amount: int
    platform_fee: int = Field(default=0)
    status: TransactionStatus = Field(default=TransactionStatus.held, index=True)
    provider_ref: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Expense(SQLModel, table=True):
    __tablename__ = "expenses"

    id: str = Field(primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    tasker_id: str = Field(foreign_key="users.id")
    description: str
    amount: int
    receipt_url: str | None = None
    status: ExpenseStatus = Field(default=ExpenseStatus.pending)
    submitted_at: datetime = Field(default_factory=_utcnow)
    reviewed_at: datetime | None = None


class Review(SQLModel, table=True):
    __tablename__ = "reviews"
    __table_args__ = (Index("uq_reviews_task_reviewer", "task_id", "reviewer_id", unique=True),)

    id: str = Field(primary_key=True)
    task_id: str = Field(index=True)  # kept after the task row is purged
    reviewer_id: str = Field(foreign_key="users.id")
    reviewee_id: str = Field(foreign_key="users.id", index=True)
    rating: int
    comment: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
