"""Rank response schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RankRead(BaseModel):
    """Public projection of a rank tier."""

    model_config = ConfigDict(from_attributes=True)

    rank_id: UUID
    name: str
    display_name: str
    description: Optional[str] = None
    min_points: int
    max_points: Optional[int] = None
    point_multiplier: Decimal
    discount_percentage: Decimal
    color: Optional[str] = None
    icon_url: Optional[str] = None
    level: int


class RankHistoryRead(BaseModel):
    """One rank transition."""

    model_config = ConfigDict(from_attributes=True)

    rank_history_id: int
    from_rank: Optional[RankRead] = None
    to_rank: RankRead
    points_at_change: int
    reason: str
    changed_by: Optional[str] = None
    changed_at: datetime


class RankAssign(BaseModel):
    """Administrator rank override."""

    rank_id: UUID
    actor: str = Field(..., min_length=1)


class PointsSummaryRead(BaseModel):
    """Balances with current and next rank."""

    model_config = ConfigDict(from_attributes=True)

    current_points: int
    lifetime_points: int
    rank: Optional[RankRead] = None
    next_rank: Optional[RankRead] = None
    points_to_next_rank: int = Field(..., ge=0)
