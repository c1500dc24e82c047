"""Point earning rule model."""

import enum
import uuid

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID

from ..core.database import Base
from ..utils.datetime import utcnow


class PointRuleEventType(str, enum.Enum):
    """Qualifying actions that can earn points."""

    PURCHASE = "purchase"
    REVIEW = "review"
    REFERRAL = "referral"
    BIRTHDAY = "birthday"
    SIGN_UP = "sign_up"
    SOCIAL_SHARE = "social_share"
    DAILY_CHECKIN = "daily_checkin"


class PointRule(Base):
    """Administered rule describing how an event type earns points."""

    __tablename__ = "point_rules"
    __table_args__ = (
        CheckConstraint("points_per_action >= 0", name="point_rules_points_per_action_non_negative"),
        CheckConstraint(
            "points_per_currency IS NULL OR points_per_currency >= 0",
            name="point_rules_points_per_currency_non_negative",
        ),
        CheckConstraint(
            "max_points_per_day IS NULL OR max_points_per_day >= 0",
            name="point_rules_daily_cap_non_negative",
        ),
        CheckConstraint(
            "max_points_per_user IS NULL OR max_points_per_user >= 0",
            name="point_rules_user_cap_non_negative",
        ),
    )

    rule_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(String)
    event_type = Column(String, nullable=False, index=True)
    points_per_action = Column(Integer, nullable=False, default=0)
    points_per_currency = Column(Numeric(14, 6))
    max_points_per_day = Column(Integer)
    max_points_per_user = Column(Integer)
    min_order_value = Column(Numeric(14, 2))
    applicable_rank_ids = Column(JSON)
    apply_rank_multiplier = Column(Boolean, nullable=False, default=True)
    points_valid_days = Column(Integer)
    valid_from = Column(DateTime)
    valid_until = Column(DateTime)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=100)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def is_within_window(self, moment) -> bool:
        if self.valid_from is not None and moment < self.valid_from:
            return False
        return self.valid_until is None or moment <= self.valid_until

    def applies_to_rank(self, rank_id) -> bool:
        if not self.applicable_rank_ids:
            return True
        return rank_id is not None and str(rank_id) in {str(value) for value in self.applicable_rank_ids}
