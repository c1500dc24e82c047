"""Point awards for qualifying member actions."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import Account, LedgerEntry, LedgerEntryKind, PointRule, PointRuleEventType, Rank
from ..utils.datetime import to_naive_utc, trailing_window_start, utcnow
from . import ledger_service
from .errors import ConcurrentUpdateError, InvalidContext, RuleConfigurationError

logger = logging.getLogger(__name__)

NO_ELIGIBLE_RULE = "no_eligible_rule"
DAILY_CAP_REACHED = "daily_cap_reached"
USER_CAP_REACHED = "user_cap_reached"
ZERO_POINTS = "zero_points"


@dataclass(frozen=True)
class AwardContext:
    """Facts about the triggering action supplied by the calling flow."""

    order_value: Decimal = Decimal("0")
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        try:
            value = Decimal(str(self.order_value if self.order_value is not None else 0))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidContext(f"Order value {self.order_value!r} is not a number.") from exc
        if not value.is_finite() or value < 0:
            raise InvalidContext("Order value must be a non-negative number.")
        object.__setattr__(self, "order_value", value)


@dataclass(frozen=True)
class AwardQuote:
    """Outcome of rule selection and clamping before anything is posted."""

    rule: Optional[PointRule]
    base_points: int = 0
    points: int = 0
    capped_by: Optional[str] = None
    reason: Optional[str] = None


def _coerce_event_type(event_type) -> PointRuleEventType:
    try:
        return PointRuleEventType(event_type)
    except ValueError as exc:
        raise InvalidContext(f"Unknown event type {event_type!r}.") from exc


def select_rule(
    session: Session,
    *,
    account: Account,
    event_type: PointRuleEventType,
    context: AwardContext,
    now: datetime,
) -> Optional[PointRule]:
    """Pick the single applicable rule: lowest priority value, newest on ties."""

    stmt = (
        select(PointRule)
        .where(PointRule.event_type == event_type.value, PointRule.is_active.is_(True))
        .order_by(PointRule.priority.asc(), PointRule.created_at.desc())
    )
    for rule in session.execute(stmt).scalars():
        if not rule.is_within_window(now):
            continue
        if not rule.applies_to_rank(account.rank_id):
            continue
        if rule.min_order_value is not None and context.order_value < Decimal(rule.min_order_value):
            continue
        return rule
    return None


def _earned_since(session: Session, account_id: UUID, *, event_type: str, since: datetime) -> int:
    stmt = select(func.coalesce(func.sum(LedgerEntry.points_delta), 0)).where(
        LedgerEntry.account_id == account_id,
        LedgerEntry.kind == LedgerEntryKind.EARN,
        LedgerEntry.event_type == event_type,
        LedgerEntry.created_at > since,
    )
    return int(session.execute(stmt).scalar_one())


def _earned_from_rule(session: Session, account_id: UUID, rule_id: UUID) -> int:
    stmt = select(func.coalesce(func.sum(LedgerEntry.points_delta), 0)).where(
        LedgerEntry.account_id == account_id,
        LedgerEntry.kind == LedgerEntryKind.EARN,
        LedgerEntry.rule_id == rule_id,
    )
    return int(session.execute(stmt).scalar_one())


def quote_award(
    session: Session,
    *,
    account: Account,
    event_type: PointRuleEventType | str,
    context: AwardContext,
    now: Optional[datetime] = None,
) -> AwardQuote:
    """Compute the clamped award for an event without posting it."""

    event_type = _coerce_event_type(event_type)
    timestamp = to_naive_utc(now) or utcnow()

    rule = select_rule(session, account=account, event_type=event_type, context=context, now=timestamp)
    if rule is None:
        return AwardQuote(rule=None, reason=NO_ELIGIBLE_RULE)

    points = rule.points_per_action or 0
    if rule.points_per_currency:
        points += math.floor(Decimal(rule.points_per_currency) * context.order_value)

    if rule.apply_rank_multiplier and account.rank_id is not None:
        rank = session.get(Rank, account.rank_id)
        if rank is not None and rank.point_multiplier is not None:
            points = math.floor(points * Decimal(rank.point_multiplier))

    base_points = max(points, 0)
    points = base_points
    capped_by = None

    if rule.max_points_per_day is not None and points > 0:
        earned_today = _earned_since(
            session,
            account.account_id,
            event_type=event_type.value,
            since=trailing_window_start(timestamp),
        )
        headroom = max(rule.max_points_per_day - earned_today, 0)
        if points > headroom:
            points, capped_by = headroom, DAILY_CAP_REACHED

    if rule.max_points_per_user is not None and points > 0:
        earned_total = _earned_from_rule(session, account.account_id, rule.rule_id)
        headroom = max(rule.max_points_per_user - earned_total, 0)
        if points > headroom:
            points, capped_by = headroom, USER_CAP_REACHED

    reason = None
    if points == 0:
        reason = capped_by or ZERO_POINTS
    return AwardQuote(rule=rule, base_points=base_points, points=points, capped_by=capped_by, reason=reason)


def award_with_quote(
    session: Session,
    *,
    account_id: UUID,
    event_type: PointRuleEventType | str,
    context: Optional[AwardContext] = None,
    now: Optional[datetime] = None,
    expect_rule: bool = False,
) -> tuple[Optional[LedgerEntry], AwardQuote]:
    """Award points for an event and return the posted entry with its quote.

    The quote is computed against a locked account snapshot and posted with
    ``expected_balance`` so caps cannot be overrun by a concurrent award; a
    lost race is recomputed once.
    """

    event_type = _coerce_event_type(event_type)
    context = context or AwardContext()
    timestamp = to_naive_utc(now) or utcnow()

    ledger_service.ensure_account(session, account_id)

    for attempt in range(2):
        account = ledger_service.lock_account(session, account_id)
        quote = quote_award(session, account=account, event_type=event_type, context=context, now=timestamp)

        if quote.rule is None:
            if expect_rule:
                logger.error("no point rule configured for expected event %s", event_type.value)
                raise RuleConfigurationError(f"No eligible point rule for event '{event_type.value}'.")
            logger.info("no point rule for %s on account %s", event_type.value, account_id)
            return None, quote

        if quote.points <= 0:
            logger.info(
                "award for %s on account %s skipped: %s",
                event_type.value,
                account_id,
                quote.reason,
            )
            return None, quote

        expires_at = None
        if quote.rule.points_valid_days:
            expires_at = timestamp + timedelta(days=quote.rule.points_valid_days)

        try:
            entry = ledger_service.post(
                session,
                account_id=account_id,
                kind=LedgerEntryKind.EARN,
                delta=quote.points,
                reason=context.reason or quote.rule.name,
                reference_type=context.reference_type,
                reference_id=context.reference_id,
                expires_at=expires_at,
                event_type=event_type.value,
                rule_id=quote.rule.rule_id,
                expected_balance=account.current_points,
                now=timestamp,
            )
        except ConcurrentUpdateError:
            if attempt:
                raise
            logger.info("account %s changed while awarding %s; recomputing", account_id, event_type.value)
            continue

        if quote.capped_by:
            logger.info(
                "award for %s on account %s capped at %d of %d (%s)",
                event_type.value,
                account_id,
                quote.points,
                quote.base_points,
                quote.capped_by,
            )
        return entry, quote

    raise ConcurrentUpdateError(f"Account {account_id} was updated concurrently.")


def award(
    session: Session,
    *,
    account_id: UUID,
    event_type: PointRuleEventType | str,
    context: Optional[AwardContext] = None,
    now: Optional[datetime] = None,
    expect_rule: bool = False,
) -> Optional[LedgerEntry]:
    """Award points for an event; ``None`` when no rule applies or the award clamps to zero."""

    entry, _ = award_with_quote(
        session,
        account_id=account_id,
        event_type=event_type,
        context=context,
        now=now,
        expect_rule=expect_rule,
    )
    return entry
