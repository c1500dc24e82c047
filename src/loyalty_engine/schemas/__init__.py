"""Public schema exports."""

from .award import AwardCreate, AwardResult
from .ledger import AccountAuditRead, BalanceRead, LedgerEntryCreate, LedgerEntryRead
from .rank import PointsSummaryRead, RankAssign, RankHistoryRead, RankRead
from .voucher import (
	DiscountRead,
	UserVoucherRead,
	VoucherAcquire,
	VoucherRead,
	VoucherRedeem,
	VoucherRevoke,
	VoucherStatsRead,
)

__all__ = [
	"AccountAuditRead",
	"AwardCreate",
	"AwardResult",
	"BalanceRead",
	"DiscountRead",
	"LedgerEntryCreate",
	"LedgerEntryRead",
	"PointsSummaryRead",
	"RankAssign",
	"RankHistoryRead",
	"RankRead",
	"UserVoucherRead",
	"VoucherAcquire",
	"VoucherRead",
	"VoucherRedeem",
	"VoucherRevoke",
	"VoucherStatsRead",
]
