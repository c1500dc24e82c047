"""Pydantic schemas for voucher workflows."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..models import UserVoucherStatus, VoucherType


class VoucherRead(BaseModel):
    """Catalog voucher as shown to members."""

    model_config = ConfigDict(from_attributes=True)

    voucher_id: UUID
    code: str
    name: str
    description: Optional[str] = None
    voucher_type: VoucherType
    discount_value: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    min_order_value: Optional[Decimal] = None
    required_rank_id: Optional[UUID] = None
    required_points: int
    max_usage_per_user: int
    max_total_usage: Optional[int] = None
    current_usage: int
    valid_from: datetime
    valid_until: datetime
    is_exclusive: bool


class UserVoucherRead(BaseModel):
    """An account's acquired voucher."""

    model_config = ConfigDict(from_attributes=True)

    user_voucher_id: UUID
    account_id: UUID
    voucher: VoucherRead
    status: UserVoucherStatus
    acquired_at: datetime
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    order_id: Optional[str] = None
    points_spent: int
    discount_amount: Optional[Decimal] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    status_reason: Optional[str] = None


class VoucherAcquire(BaseModel):
    """Request to spend points on a voucher."""

    voucher_id: UUID


class VoucherRedeem(BaseModel):
    """Checkout request applying an acquired voucher to an order."""

    account_id: UUID
    order_id: str = Field(..., min_length=1)
    order_value: Decimal = Field(..., ge=0)
    shipping_fee: Decimal = Field(Decimal("0"), ge=0)


class VoucherRevoke(BaseModel):
    """Administrator revocation of an unused voucher."""

    actor: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=280)


class DiscountRead(BaseModel):
    """Discount returned to checkout."""

    model_config = ConfigDict(from_attributes=True)

    user_voucher_id: UUID
    voucher_code: str
    voucher_type: VoucherType
    order_id: str
    order_value: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    free_shipping: bool
    gift: bool


class VoucherStatsRead(BaseModel):
    """Per-account voucher totals."""

    model_config = ConfigDict(from_attributes=True)

    total_available: int
    used_count: int
    expired_count: int
    total_saved: Decimal
