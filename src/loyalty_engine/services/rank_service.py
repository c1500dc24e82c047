"""Rank progression derived from lifetime points."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from ..models import Account, LedgerEntry, Rank, RankChangeReason, RankHistory
from ..utils.datetime import utcnow
from . import ledger_service
from .errors import AccountNotFound, NoMatchingRank, RankNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointsSummary:
    current_points: int
    lifetime_points: int
    rank: Optional[Rank]
    next_rank: Optional[Rank]
    points_to_next_rank: int


def _active_ranks(session: Session) -> list[Rank]:
    stmt = select(Rank).where(Rank.is_active.is_(True)).order_by(Rank.level.asc())
    return list(session.execute(stmt).scalars().all())


def validate_bands(ranks: Sequence[Rank]) -> None:
    """Ensure active ranks partition ``[0, inf)`` into contiguous bands ordered by level."""

    if not ranks:
        raise NoMatchingRank("No active ranks are configured.")

    ordered = sorted(ranks, key=lambda rank: rank.level)
    if ordered[0].min_points != 0:
        raise NoMatchingRank(
            f"Lowest rank '{ordered[0].name}' starts at {ordered[0].min_points}; bands must start at 0."
        )

    for lower, upper in zip(ordered, ordered[1:]):
        if lower.max_points is None:
            raise NoMatchingRank(f"Rank '{lower.name}' is unbounded but is not the top rank.")
        if lower.max_points <= lower.min_points:
            raise NoMatchingRank(f"Rank '{lower.name}' has an empty band.")
        if lower.max_points != upper.min_points:
            kind = "gap" if lower.max_points < upper.min_points else "overlap"
            raise NoMatchingRank(
                f"Rank bands have a {kind} between '{lower.name}' (max {lower.max_points}) "
                f"and '{upper.name}' (min {upper.min_points})."
            )

    top = ordered[-1]
    if top.max_points is not None:
        raise NoMatchingRank(f"Top rank '{top.name}' must have an unbounded max_points.")


def _match(ranks: Sequence[Rank], lifetime_points: int) -> Rank:
    try:
        validate_bands(ranks)
    except NoMatchingRank:
        logger.error("rank configuration is invalid", exc_info=True)
        raise

    for rank in ranks:
        if rank.contains(lifetime_points):
            return rank
    raise NoMatchingRank(f"No rank band covers {lifetime_points} lifetime points.")


def resolve_rank(session: Session, lifetime_points: int) -> Rank:
    """Return the single active rank whose band contains ``lifetime_points``."""

    return _match(_active_ranks(session), lifetime_points)


def _record_transition(
    session: Session,
    account: Account,
    target: Rank,
    *,
    reason: str,
    actor: Optional[str] = None,
) -> RankHistory:
    history = RankHistory(
        account_id=account.account_id,
        from_rank_id=account.rank_id,
        to_rank_id=target.rank_id,
        points_at_change=account.lifetime_points,
        reason=reason,
        changed_by=actor,
        changed_at=utcnow(),
    )
    account.rank = target
    account.updated_at = history.changed_at
    session.add(history)
    session.flush()
    logger.info(
        "account %s moved to rank %s at %d lifetime points (%s)",
        account.account_id,
        target.name,
        account.lifetime_points,
        reason,
    )
    return history


def _evaluate_account(session: Session, account: Account) -> Optional[RankHistory]:
    ranks = _active_ranks(session)
    target = _match(ranks, account.lifetime_points)
    if account.rank_id == target.rank_id:
        return None

    current = next((rank for rank in ranks if rank.rank_id == account.rank_id), None)
    if current is not None and current.level >= target.level:
        # Organic accrual never demotes; an administrator placed the account higher.
        return None

    return _record_transition(session, account, target, reason=RankChangeReason.POINTS_THRESHOLD)


def evaluate(session: Session, account_id: UUID) -> Optional[RankHistory]:
    """Re-derive the account's rank from lifetime points; return the transition, if any."""

    account = ledger_service.lock_account(session, account_id)
    return _evaluate_account(session, account)


def _ranks_configured(session: Session, account: Account) -> bool:
    if _active_ranks(session):
        return True
    logger.warning("no active ranks configured; account %s left unranked", account.account_id)
    return False


@ledger_service.listens_for(ledger_service.LIFETIME_POINTS_CHANGED)
def _after_lifetime_change(session: Session, account: Account, entry: LedgerEntry) -> None:
    if _ranks_configured(session, account):
        _evaluate_account(session, account)


@ledger_service.listens_for(ledger_service.ACCOUNT_OPENED)
def _after_account_opened(session: Session, account: Account) -> None:
    if _ranks_configured(session, account):
        _evaluate_account(session, account)


def assign_rank(
    session: Session,
    *,
    account_id: UUID,
    rank_id: UUID,
    actor: str,
    reason: str = RankChangeReason.ADMIN_OVERRIDE,
) -> Optional[RankHistory]:
    """Administrator override; may move the account down and skips the threshold check."""

    account = ledger_service.lock_account(session, account_id)
    target = session.get(Rank, rank_id)
    if target is None or not target.is_active:
        raise RankNotFound(f"Rank {rank_id} not found")
    if account.rank_id == target.rank_id:
        return None
    return _record_transition(session, account, target, reason=reason, actor=actor)


def get_current_rank(session: Session, account_id: UUID) -> Optional[Rank]:
    stmt = (
        select(Account)
        .options(joinedload(Account.rank))
        .where(Account.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    account = session.execute(stmt).scalar_one_or_none()
    if account is None:
        raise AccountNotFound(f"Account {account_id} not found")
    return account.rank


def get_rank_history(
    session: Session,
    account_id: UUID,
    *,
    limit: int = 50,
    offset: int = 0,
) -> Sequence[RankHistory]:
    """Return rank transitions newest first."""

    if session.get(Account, account_id) is None:
        raise AccountNotFound(f"Account {account_id} not found")

    stmt = (
        select(RankHistory)
        .options(joinedload(RankHistory.from_rank), joinedload(RankHistory.to_rank))
        .where(RankHistory.account_id == account_id)
        .order_by(RankHistory.changed_at.desc(), RankHistory.rank_history_id.desc())
        .offset(offset)
        .limit(limit)
    )
    return session.execute(stmt).scalars().all()


def points_summary(session: Session, account_id: UUID) -> PointsSummary:
    """Balances, current rank and the distance to the next rank band."""

    balance = ledger_service.get_balance(session, account_id)
    rank = get_current_rank(session, account_id)

    next_rank = None
    if rank is not None:
        stmt = (
            select(Rank)
            .where(Rank.is_active.is_(True), Rank.level > rank.level)
            .order_by(Rank.level.asc())
            .limit(1)
        )
        next_rank = session.execute(stmt).scalar_one_or_none()

    points_to_next = max(next_rank.min_points - balance.lifetime_points, 0) if next_rank else 0
    return PointsSummary(
        current_points=balance.current_points,
        lifetime_points=balance.lifetime_points,
        rank=rank,
        next_rank=next_rank,
        points_to_next_rank=points_to_next,
    )
