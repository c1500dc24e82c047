"""Rank tier and rank transition models."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.datetime import utcnow


class RankChangeReason:
    """Reasons recorded on rank history rows."""

    POINTS_THRESHOLD = "points_threshold"
    ADMIN_OVERRIDE = "admin_override"


class Rank(Base):
    """A tier band over lifetime points: ``min_points`` inclusive, ``max_points`` exclusive."""

    __tablename__ = "ranks"
    __table_args__ = (
        UniqueConstraint("name", name="ranks_name_unique"),
        UniqueConstraint("level", name="ranks_level_unique"),
        CheckConstraint("min_points >= 0", name="ranks_min_points_non_negative"),
        CheckConstraint("max_points IS NULL OR max_points > min_points", name="ranks_band_ordered"),
        CheckConstraint("point_multiplier >= 0", name="ranks_multiplier_non_negative"),
    )

    rank_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    description = Column(String)
    min_points = Column(Integer, nullable=False)
    max_points = Column(Integer)
    point_multiplier = Column(Numeric(6, 2), nullable=False, default=1)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    color = Column(String)
    icon_url = Column(String)
    level = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    accounts = relationship("Account", back_populates="rank")

    def contains(self, lifetime_points: int) -> bool:
        if lifetime_points < self.min_points:
            return False
        return self.max_points is None or lifetime_points < self.max_points


class RankHistory(Base):
    """Append-only record of each rank transition for an account."""

    __tablename__ = "rank_history"

    rank_history_id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=False)
    from_rank_id = Column(UUID(as_uuid=True), ForeignKey("ranks.rank_id", ondelete="SET NULL"))
    to_rank_id = Column(UUID(as_uuid=True), ForeignKey("ranks.rank_id", ondelete="RESTRICT"), nullable=False)
    points_at_change = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    changed_by = Column(String)
    changed_at = Column(DateTime, default=utcnow, nullable=False)

    account = relationship("Account", back_populates="rank_history")
    from_rank = relationship("Rank", foreign_keys=[from_rank_id])
    to_rank = relationship("Rank", foreign_keys=[to_rank_id])
