"""Member account model holding derived point balances."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.datetime import utcnow


class Account(Base):
    """One loyalty account per user; balances are maintained by ledger postings only."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("current_points >= 0", name="accounts_current_points_non_negative"),
        CheckConstraint("lifetime_points >= 0", name="accounts_lifetime_points_non_negative"),
    )

    account_id = Column(UUID(as_uuid=True), primary_key=True)
    current_points = Column(Integer, nullable=False, default=0)
    lifetime_points = Column(Integer, nullable=False, default=0)
    rank_id = Column(UUID(as_uuid=True), ForeignKey("ranks.rank_id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    rank = relationship("Rank", back_populates="accounts")
    ledger_entries = relationship("LedgerEntry", back_populates="account", order_by="LedgerEntry.ledger_entry_id")
    rank_history = relationship("RankHistory", back_populates="account", order_by="RankHistory.rank_history_id")
    vouchers = relationship("UserVoucher", back_populates="account")
