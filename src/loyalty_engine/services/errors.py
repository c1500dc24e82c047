"""Error taxonomy shared by the ledger, rank, rule and voucher services.

Every error carries a human-readable ``detail`` and the HTTP status the API
layer should answer with. Callers own the surrounding transaction and must
roll back after catching any of these.
"""

from __future__ import annotations


class LoyaltyError(Exception):
    """Base class for all engine errors."""

    status_code = 400

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


# Validation: rejected before any state change.


class InvalidDelta(LoyaltyError):
    """Zero delta, or a delta whose sign disagrees with its ledger kind."""


class InvalidContext(LoyaltyError):
    """Malformed request context (order value, event type, missing actor)."""

    status_code = 422


# Lookups.


class NotFound(LoyaltyError):
    status_code = 404


class AccountNotFound(NotFound):
    pass


class RankNotFound(NotFound):
    pass


class VoucherNotFound(NotFound):
    pass


# Business rules: expected, user-recoverable outcomes.


class BusinessRuleViolation(LoyaltyError):
    """Outcome the user can act on; not a system failure."""


class InsufficientBalance(BusinessRuleViolation):
    pass


class VoucherNotEligible(BusinessRuleViolation):
    pass


class VoucherExhausted(BusinessRuleViolation):
    status_code = 409


class VoucherNotAvailable(BusinessRuleViolation):
    status_code = 409


# Concurrency.


class ConcurrentUpdateError(LoyaltyError):
    """A compare-and-swap lost against a concurrent writer."""

    status_code = 409


# Configuration: administered data is inconsistent; no user action fixes it.


class ConfigurationError(LoyaltyError):
    status_code = 500


class NoMatchingRank(ConfigurationError):
    pass


class RuleConfigurationError(ConfigurationError):
    pass
