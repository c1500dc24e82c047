"""SQLAlchemy models for the loyalty engine."""

from .account import Account
from .ledger_entry import LedgerEntry, LedgerEntryKind, counts_toward_lifetime
from .point_rule import PointRule, PointRuleEventType
from .rank import Rank, RankChangeReason, RankHistory
from .voucher import UserVoucher, UserVoucherStatus, Voucher, VoucherType

__all__ = [
    "Account",
    "LedgerEntry",
    "LedgerEntryKind",
    "PointRule",
    "PointRuleEventType",
    "Rank",
    "RankChangeReason",
    "RankHistory",
    "UserVoucher",
    "UserVoucherStatus",
    "Voucher",
    "VoucherType",
    "counts_toward_lifetime",
]
