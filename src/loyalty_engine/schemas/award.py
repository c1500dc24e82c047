"""Schemas for awarding points on member events."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ..models import PointRuleEventType
from .ledger import LedgerEntryRead


class AwardCreate(BaseModel):
    """Qualifying event reported by checkout, reviews, referrals, sign-up or check-in."""

    event_type: PointRuleEventType
    order_value: Decimal = Field(Decimal("0"), ge=0, description="Order total in currency units.")
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=280)


class AwardResult(BaseModel):
    """Award outcome; ``entry`` is empty when nothing was posted and ``reason`` says why."""

    awarded: bool
    points: int = Field(..., ge=0)
    requested_points: int = Field(..., ge=0)
    capped_by: Optional[str] = None
    reason: Optional[str] = None
    entry: Optional[LedgerEntryRead] = None
