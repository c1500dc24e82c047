"""Points ledger, rank progression and voucher redemption engine."""

__version__ = "0.1.0"
