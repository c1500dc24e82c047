"""Point ledger model capturing every balance movement."""

import enum

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer, String, event
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.datetime import utcnow


class LedgerEntryKind(str, enum.Enum):
    """Ledger entry classification."""

    EARN = "earn"
    SPEND = "spend"
    EXPIRE = "expire"
    ADMIN_ADJUST = "admin_adjust"
    BONUS = "bonus"
    REFUND = "refund"


CREDIT_KINDS = frozenset({LedgerEntryKind.EARN, LedgerEntryKind.BONUS, LedgerEntryKind.REFUND})
DEBIT_KINDS = frozenset({LedgerEntryKind.SPEND, LedgerEntryKind.EXPIRE})


def counts_toward_lifetime(kind: LedgerEntryKind, delta: int) -> bool:
    """Positive earnings raise lifetime points; spends and expiries never lower them."""

    if kind in CREDIT_KINDS:
        return True
    return kind == LedgerEntryKind.ADMIN_ADJUST and delta > 0


class LedgerEntry(Base):
    """Immutable ledger of point deltas for each account."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint(
            "((kind IN ('spend', 'expire') AND points_delta < 0) "
            "OR (kind IN ('earn', 'bonus', 'refund') AND points_delta > 0) "
            "OR (kind = 'admin_adjust' AND points_delta <> 0))",
            name="ledger_entries_delta_sign",
        ),
        CheckConstraint("balance_after >= 0", name="ledger_entries_balance_after_non_negative"),
        Index("ix_ledger_entries_account_created", "account_id", "created_at"),
        Index("ix_ledger_entries_account_expires", "account_id", "expires_at"),
    )

    ledger_entry_id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.account_id", ondelete="RESTRICT"), nullable=False)
    kind = Column(
        Enum(LedgerEntryKind, name="ledger_entry_kind", values_callable=lambda kinds: [k.value for k in kinds]),
        nullable=False,
    )
    points_delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    reference_type = Column(String)
    reference_id = Column(String)
    event_type = Column(String)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("point_rules.rule_id", ondelete="SET NULL"))
    offsets_entry_id = Column(Integer, ForeignKey("ledger_entries.ledger_entry_id", ondelete="RESTRICT"))
    expires_at = Column(DateTime)
    created_by = Column(String)
    admin_note = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    account = relationship("Account", back_populates="ledger_entries")
    rule = relationship("PointRule")


@event.listens_for(LedgerEntry, "before_update")
def _reject_update(mapper, connection, target: LedgerEntry) -> None:
    raise ValueError(f"ledger entry {target.ledger_entry_id} is immutable; post an offsetting entry instead")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_delete(mapper, connection, target: LedgerEntry) -> None:
    raise ValueError(f"ledger entry {target.ledger_entry_id} cannot be deleted")
