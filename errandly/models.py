"""Pydantic models for request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from errandly.db_models import AllowedTier, Frequency, UserTier
from errandly.recurrence import parse_time_of_day


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200, description="Display name")
    tier: UserTier = Field(default=UserTier.basic, description="basic, standard or pro")


class RegisterResponse(BaseModel):
    user_id: str
    api_key: str
    tier: str
    message: str = "Welcome to Errandly! Save your API key, it cannot be recovered."


class PerkInfo(BaseModel):
    type: str
    value: float
    expires_at: str | None = None


class ProfileResponse(BaseModel):
    user_id: str
    name: str
    tier: str
    wallet_balance: int
    loyalty_points: int
    task_points: int
    rewards_level: str
    rating_avg: float = 0.0
    rating_count: int = 0
    perks: list[PerkInfo] = []
    created_at: str | None = None


class RecurringConfig(BaseModel):
    frequency: Frequency
    time_of_day: str = Field(description="HH:MM in UTC")
    day_of_week: int | None = Field(
        default=None, ge=0, le=6, description="0=Sunday .. 6=Saturday, weekly schedules only"
    )
    end_date: datetime | None = None

    @field_validator("time_of_day")
    @classmethod
    def validate_time_of_day(cls, v: str) -> str:
        parse_time_of_day(v)
        return v


class TaskCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    category_id: str = Field(min_length=1, max_length=50)
    category_name: str | None = Field(
        default=None, max_length=100, description="Required when category_id is 'custom'"
    )
    price: int = Field(gt=0, description="Price in minor currency units")
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    duration_min: int | None = Field(default=None, ge=1, le=24 * 60)
    required_skills: list[str] | None = Field(default=None, max_length=20)
    bidding_enabled: bool = False
    quick_accept: bool = True
    allowed_tier: AllowedTier = AllowedTier.all
    radius_km: float | None = Field(default=None, gt=0, le=100)
    scheduled_for: datetime | None = None
    bid_window_hours: float | None = Field(
        default=None, ge=0, le=168, description="Bidding closes this long before scheduled_for"
    )
    recurring_config: RecurringConfig | None = None

    @field_validator("required_skills")
    @classmethod
    def validate_skills(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        for skill in v:
            if not skill.strip() or len(skill) > 50:
                raise ValueError("Each skill must be 1-50 characters")
        return [s.strip() for s in v]


class TaskCreateResponse(BaseModel):
    task_id: str
    status: str
    escrow_ref: str
    is_scheduled: bool
    scheduled_for: str | None = None
    bid_window_ends_at: str | None = None


class TaskUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    price: int | None = Field(default=None, gt=0)
    duration_min: int | None = Field(default=None, ge=1, le=24 * 60)
    radius_km: float | None = Field(default=None, gt=0, le=100)
    required_skills: list[str] | None = Field(default=None, max_length=20)


class TaskResponse(BaseModel):
    id: str
    requester_id: str
    assigned_tasker_id: str | None = None
    title: str
    description: str | None = None
    category_id: str
    price: int
    status: str
    lat: float
    lng: float
    escrow_held: bool
    is_scheduled: bool
    is_recurring: bool
    distance_km: float | None = None


class NearbyResponse(BaseModel):
    tasks: list[dict]
    total: int
    radius_km: float


class CompleteRequest(BaseModel):
    proof_url: str | None = Field(default=None, max_length=2000)


class LocationRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    heading: float | None = Field(default=None, ge=0, lt=360)


class OfferCreateRequest(BaseModel):
    proposed_price: int = Field(gt=0)
    message: str | None = Field(default=None, max_length=1000)


class OfferResponse(BaseModel):
    id: str
    task_id: str
    tasker_id: str
    proposed_price: int
    message: str | None = None
    status: str
    created_at: str | None = None


class ExpenseCreateRequest(BaseModel):
    description: str = Field(min_length=1, max_length=500)
    amount: int = Field(gt=0)
    receipt_url: str | None = Field(default=None, max_length=2000)


class ExpenseReviewRequest(BaseModel):
    status: Literal["approved", "rejected"]


class ReviewCreateRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=2000)


class ReviewResponse(BaseModel):
    id: str
    task_id: str
    reviewer_id: str
    reviewee_id: str
    rating: int
    comment: str | None = None
    created_at: str | None = None


class RedeemPointsRequest(BaseModel):
    points: int = Field(gt=0, description="Rounded down to whole redemption blocks")


class SettingsUpdateRequest(BaseModel):
    platform_fee_pct: float | None = Field(default=None, ge=0, le=100)
    default_radius_km: float | None = Field(default=None, gt=0, le=100)


class SettingsResponse(BaseModel):
    platform_fee_pct: float
    default_radius_km: float
    updated_at: str | None = None


class CategoryResponse(BaseModel):
    id: str
    name: str
    min_price: int | None = None
    max_price: int | None = None


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None
