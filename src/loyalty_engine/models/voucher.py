"""Voucher catalog and per-account voucher instance models."""

import enum
import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Enum as SAEnum, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.datetime import utcnow


def _enum_values(members):
    return [member.value for member in members]


class VoucherType(str, enum.Enum):
    """Discount mechanisms."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_SHIPPING = "free_shipping"
    GIFT = "gift"


class UserVoucherStatus(str, enum.Enum):
    """Lifecycle states of an acquired voucher; every state but AVAILABLE is final."""

    AVAILABLE = "available"
    USED = "used"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Voucher(Base):
    """Redeemable instrument that accounts acquire with points."""

    __tablename__ = "vouchers"
    __table_args__ = (
        CheckConstraint("current_usage >= 0", name="vouchers_current_usage_non_negative"),
        CheckConstraint(
            "max_total_usage IS NULL OR current_usage <= max_total_usage",
            name="vouchers_usage_within_cap",
        ),
        CheckConstraint("required_points >= 0", name="vouchers_required_points_non_negative"),
        CheckConstraint("max_usage_per_user >= 1", name="vouchers_per_user_cap_positive"),
    )

    voucher_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    description = Column(String)
    voucher_type = Column(SAEnum(VoucherType, name="voucher_type", values_callable=_enum_values), nullable=False)
    discount_value = Column(Numeric(14, 2))
    max_discount = Column(Numeric(14, 2))
    min_order_value = Column(Numeric(14, 2))
    required_rank_id = Column(UUID(as_uuid=True), ForeignKey("ranks.rank_id", ondelete="SET NULL"))
    required_points = Column(Integer, nullable=False, default=0)
    max_usage_per_user = Column(Integer, nullable=False, default=1)
    max_total_usage = Column(Integer)
    current_usage = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime, nullable=False)
    valid_until = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_exclusive = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    required_rank = relationship("Rank")
    instances = relationship("UserVoucher", back_populates="voucher")

    @property
    def is_exhausted(self) -> bool:
        return self.max_total_usage is not None and self.current_usage >= self.max_total_usage


class UserVoucher(Base):
    """An account's acquired copy of a voucher."""

    __tablename__ = "user_vouchers"
    __table_args__ = (
        Index("ix_user_vouchers_account_voucher", "account_id", "voucher_id"),
        Index("ix_user_vouchers_status_expires", "status", "expires_at"),
    )

    user_voucher_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.account_id", ondelete="RESTRICT"), nullable=False)
    voucher_id = Column(UUID(as_uuid=True), ForeignKey("vouchers.voucher_id", ondelete="RESTRICT"), nullable=False)
    status = Column(
        SAEnum(UserVoucherStatus, name="user_voucher_status", values_callable=_enum_values),
        nullable=False,
        default=UserVoucherStatus.AVAILABLE,
    )
    acquired_at = Column(DateTime, default=utcnow, nullable=False)
    used_at = Column(DateTime)
    expires_at = Column(DateTime)
    order_id = Column(String)
    points_spent = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Numeric(14, 2))
    revoked_at = Column(DateTime)
    revoked_by = Column(String)
    status_reason = Column(String)

    account = relationship("Account", back_populates="vouchers")
    voucher = relationship("Voucher", back_populates="instances")
