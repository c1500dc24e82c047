"""Service layer exports.

Importing the package registers the rank engine's ledger listeners.
"""

from . import (
	errors,
	ledger_service,
	point_rule_service,
	rank_service,
	voucher_service,
)

__all__ = [
	"errors",
	"ledger_service",
	"point_rule_service",
	"rank_service",
	"voucher_service",
]
