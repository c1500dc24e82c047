"""Point ledger: the only writer of account balances.

Every balance change is an immutable :class:`LedgerEntry`. The account row
caches ``current_points``/``lifetime_points`` as a fold over those entries and
is only written here, with the row locked and the balance updated through a
compare-and-swap so that two writers can never both pass a balance check
against a stale value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import Account, LedgerEntry, LedgerEntryKind, counts_toward_lifetime
from ..models.ledger_entry import CREDIT_KINDS, DEBIT_KINDS
from ..utils.datetime import to_naive_utc, utcnow
from .errors import (
    AccountNotFound,
    ConcurrentUpdateError,
    InsufficientBalance,
    InvalidContext,
    InvalidDelta,
)

logger = logging.getLogger(__name__)

ACCOUNT_OPENED = "account_opened"
LIFETIME_POINTS_CHANGED = "lifetime_points_changed"

_listeners: dict[str, list[Callable]] = {
    ACCOUNT_OPENED: [],
    LIFETIME_POINTS_CHANGED: [],
}


def listens_for(event_name: str) -> Callable[[Callable], Callable]:
    """Register a callback invoked synchronously inside the posting transaction.

    ``account_opened`` listeners receive ``(session, account)``;
    ``lifetime_points_changed`` listeners receive ``(session, account, entry)``
    while the account row is still locked.
    """

    if event_name not in _listeners:
        raise ValueError(f"Unknown ledger event {event_name!r}")

    def decorator(listener: Callable) -> Callable:
        if listener not in _listeners[event_name]:
            _listeners[event_name].append(listener)
        return listener

    return decorator


def _notify(event_name: str, *args) -> None:
    for listener in _listeners[event_name]:
        listener(*args)


@dataclass(frozen=True)
class BalanceSnapshot:
    account_id: UUID
    current_points: int
    lifetime_points: int


@dataclass(frozen=True)
class AccountAudit:
    """Stored balances compared against a full replay of the ledger."""

    account_id: UUID
    stored_current_points: int
    stored_lifetime_points: int
    replayed_current_points: int
    replayed_lifetime_points: int
    entry_count: int
    first_broken_entry_id: Optional[int] = None

    @property
    def consistent(self) -> bool:
        return (
            self.stored_current_points == self.replayed_current_points
            and self.stored_lifetime_points == self.replayed_lifetime_points
            and self.first_broken_entry_id is None
        )


@dataclass
class GrantRemainder:
    """Unexpired, unspent part of an expiring grant."""

    entry: LedgerEntry
    remaining: int


def ensure_account(session: Session, account_id: UUID) -> Account:
    """Return the account, opening it with zero balances if it does not exist.

    Two callers may race to open the same account. The loser's insert is
    rolled back to a savepoint and it reads the winner's row instead;
    ``account_opened`` fires only for the caller that created the row.
    """

    account = session.get(Account, account_id)
    if account is not None:
        return account

    account = Account(account_id=account_id, current_points=0, lifetime_points=0)
    try:
        with session.begin_nested():
            session.add(account)
    except IntegrityError:
        logger.warning("Detected race when opening loyalty account %s", account_id)
        return lock_account(session, account_id)

    logger.info("opened loyalty account %s", account_id)
    _notify(ACCOUNT_OPENED, session, account)
    return account


def lock_account(session: Session, account_id: UUID) -> Account:
    """Select the account row ``FOR UPDATE`` and reload its attributes."""

    stmt = (
        select(Account)
        .where(Account.account_id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = session.execute(stmt).scalar_one_or_none()
    if account is None:
        raise AccountNotFound(f"Account {account_id} not found")
    return account


def _require_account(session: Session, account_id: UUID) -> Account:
    account = session.get(Account, account_id, populate_existing=True)
    if account is None:
        raise AccountNotFound(f"Account {account_id} not found")
    return account


def validate_delta(kind, delta) -> LedgerEntryKind:
    """Reject zero deltas and deltas whose sign contradicts the entry kind."""

    try:
        kind = LedgerEntryKind(kind)
    except ValueError as exc:
        raise InvalidDelta(f"Unknown ledger entry kind {kind!r}.") from exc

    if isinstance(delta, bool) or not isinstance(delta, int):
        raise InvalidDelta("Point delta must be an integer.")
    if delta == 0:
        raise InvalidDelta("Point delta must be non-zero.")
    if kind in CREDIT_KINDS and delta < 0:
        raise InvalidDelta(f"'{kind.value}' entries must add points.")
    if kind in DEBIT_KINDS and delta > 0:
        raise InvalidDelta(f"'{kind.value}' entries must remove points.")
    return kind


def _compare_and_set_balance(
    session: Session,
    account_id: UUID,
    *,
    expected: int,
    delta: int,
    lifetime_increment: int,
    now: datetime,
) -> bool:
    values = {"current_points": expected + delta, "updated_at": now}
    if lifetime_increment:
        values["lifetime_points"] = Account.lifetime_points + lifetime_increment

    stmt = (
        update(Account)
        .where(Account.account_id == account_id, Account.current_points == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def post(
    session: Session,
    *,
    account_id: UUID,
    kind: LedgerEntryKind | str,
    delta: int,
    reason: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    actor: Optional[str] = None,
    admin_note: Optional[str] = None,
    event_type: Optional[str] = None,
    rule_id: Optional[UUID] = None,
    offsets_entry_id: Optional[int] = None,
    expected_balance: Optional[int] = None,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    """Append a ledger entry and apply it to the account balance.

    ``now`` may not precede the account's latest entry, so the stored order
    of entries is also their time order.

    Without ``expected_balance`` a lost compare-and-swap is retried once
    against the freshly locked balance. With it, the caller computed ``delta``
    from that snapshot, so a mismatch raises :class:`ConcurrentUpdateError`
    for the caller to recompute.
    """

    kind = validate_delta(kind, delta)
    if not reason or not reason.strip():
        raise InvalidContext("A ledger entry needs a reason.")
    if kind == LedgerEntryKind.ADMIN_ADJUST and not actor:
        raise InvalidContext("Administrator adjustments require an actor.")

    timestamp = to_naive_utc(now) or utcnow()
    lifetime_increment = delta if counts_toward_lifetime(kind, delta) else 0

    attempts = 1 if expected_balance is not None else 2
    for attempt in range(attempts):
        account = lock_account(session, account_id)
        latest = latest_entry_at(session, account_id)
        if latest is not None and timestamp < latest:
            raise InvalidContext(
                f"Entry time {timestamp.isoformat()} is earlier than the latest entry ({latest.isoformat()})."
            )
        balance = account.current_points if expected_balance is None else expected_balance
        if balance + delta < 0:
            raise InsufficientBalance(
                f"Insufficient points: balance is {balance}, {-delta} required."
            )
        if _compare_and_set_balance(
            session,
            account.account_id,
            expected=balance,
            delta=delta,
            lifetime_increment=lifetime_increment,
            now=timestamp,
        ):
            break
        logger.info("balance of account %s moved during posting (attempt %d)", account_id, attempt + 1)
    else:
        if expected_balance is None and delta < 0:
            raise InsufficientBalance("Balance changed while the points were being spent.")
        raise ConcurrentUpdateError(f"Account {account_id} was updated concurrently.")

    entry = LedgerEntry(
        account_id=account.account_id,
        kind=kind,
        points_delta=delta,
        balance_after=balance + delta,
        reason=reason.strip(),
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        event_type=getattr(event_type, "value", event_type),
        rule_id=rule_id,
        offsets_entry_id=offsets_entry_id,
        expires_at=to_naive_utc(expires_at),
        created_by=actor,
        admin_note=admin_note,
        created_at=timestamp,
    )
    session.add(entry)
    session.flush()
    session.refresh(account)

    logger.debug(
        "posted %s %+d to account %s (balance %d)",
        kind.value,
        delta,
        account.account_id,
        entry.balance_after,
    )

    if lifetime_increment:
        _notify(LIFETIME_POINTS_CHANGED, session, account, entry)
    return entry


def get_balance(session: Session, account_id: UUID) -> BalanceSnapshot:
    account = _require_account(session, account_id)
    return BalanceSnapshot(
        account_id=account.account_id,
        current_points=account.current_points,
        lifetime_points=account.lifetime_points,
    )


def get_ledger_history(
    session: Session,
    account_id: UUID,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    kind: Optional[LedgerEntryKind] = None,
    limit: int = 50,
    offset: int = 0,
) -> Sequence[LedgerEntry]:
    """Return entries newest first; ``start`` is inclusive, ``end`` exclusive."""

    _require_account(session, account_id)

    stmt = (
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.ledger_entry_id.desc())
        .offset(offset)
        .limit(limit)
    )
    if start is not None:
        stmt = stmt.where(LedgerEntry.created_at >= to_naive_utc(start))
    if end is not None:
        stmt = stmt.where(LedgerEntry.created_at < to_naive_utc(end))
    if kind is not None:
        stmt = stmt.where(LedgerEntry.kind == LedgerEntryKind(kind))

    return session.execute(stmt).scalars().all()


def latest_entry_at(session: Session, account_id: UUID) -> Optional[datetime]:
    stmt = select(func.max(LedgerEntry.created_at)).where(LedgerEntry.account_id == account_id)
    return session.execute(stmt).scalar_one()


def _ordered_entries(session: Session, account_id: UUID) -> Sequence[LedgerEntry]:
    stmt = (
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at.asc(), LedgerEntry.ledger_entry_id.asc())
    )
    return session.execute(stmt).scalars().all()


def balance_as_of(session: Session, account_id: UUID, timestamp: datetime) -> int:
    """Replay deltas up to and including ``timestamp``."""

    _require_account(session, account_id)
    stmt = select(func.coalesce(func.sum(LedgerEntry.points_delta), 0)).where(
        LedgerEntry.account_id == account_id,
        LedgerEntry.created_at <= to_naive_utc(timestamp),
    )
    return int(session.execute(stmt).scalar_one())


def replay_account(session: Session, account_id: UUID) -> AccountAudit:
    """Recompute balances from the ledger and check the ``balance_after`` chain."""

    account = _require_account(session, account_id)
    entries = _ordered_entries(session, account_id)

    current = 0
    lifetime = 0
    broken: Optional[int] = None
    for entry in entries:
        current += entry.points_delta
        if counts_toward_lifetime(entry.kind, entry.points_delta):
            lifetime += entry.points_delta
        if broken is None and entry.balance_after != current:
            broken = entry.ledger_entry_id

    audit = AccountAudit(
        account_id=account.account_id,
        stored_current_points=account.current_points,
        stored_lifetime_points=account.lifetime_points,
        replayed_current_points=current,
        replayed_lifetime_points=lifetime,
        entry_count=len(entries),
        first_broken_entry_id=broken,
    )
    if not audit.consistent:
        logger.error("ledger replay mismatch for account %s: %s", account_id, audit)
    return audit


def remaining_grants(entries: Sequence[LedgerEntry]) -> list[GrantRemainder]:
    """Fold ordered entries into what is left of each expiring grant.

    Debits consume the earliest-expiring grant still valid at that moment
    first, then points that never expire. A grant already past its expiry is
    left for the sweep. An ``expire`` entry offsets the grant it names.
    """

    grants: dict[int, GrantRemainder] = {}
    for entry in entries:
        if entry.points_delta > 0:
            if entry.expires_at is not None:
                grants[entry.ledger_entry_id] = GrantRemainder(entry=entry, remaining=entry.points_delta)
            continue

        if entry.kind == LedgerEntryKind.EXPIRE and entry.offsets_entry_id in grants:
            grant = grants[entry.offsets_entry_id]
            grant.remaining = max(0, grant.remaining + entry.points_delta)
            continue

        owed = -entry.points_delta
        for grant in sorted(grants.values(), key=lambda g: (g.entry.expires_at, g.entry.ledger_entry_id)):
            if owed == 0:
                break
            if grant.entry.expires_at <= entry.created_at:
                continue
            taken = min(grant.remaining, owed)
            grant.remaining -= taken
            owed -= taken

    return [grant for grant in grants.values() if grant.remaining > 0]


def accounts_with_due_points(session: Session, *, now: Optional[datetime] = None) -> Sequence[UUID]:
    """Accounts holding at least one grant whose expiry has passed."""

    timestamp = to_naive_utc(now) or utcnow()
    stmt = (
        select(LedgerEntry.account_id)
        .where(
            LedgerEntry.points_delta > 0,
            LedgerEntry.expires_at.is_not(None),
            LedgerEntry.expires_at <= timestamp,
        )
        .distinct()
    )
    return session.execute(stmt).scalars().all()


def expire_account_points(
    session: Session,
    account_id: UUID,
    *,
    now: Optional[datetime] = None,
) -> list[LedgerEntry]:
    """Post one ``expire`` entry per due grant that still has a remainder.

    Safe to re-run: an offset grant folds to zero and is skipped.
    """

    timestamp = to_naive_utc(now) or utcnow()
    posted: list[LedgerEntry] = []

    for attempt in range(2):
        account = lock_account(session, account_id)
        balance = account.current_points
        latest = latest_entry_at(session, account_id)
        posted_at = max(timestamp, latest) if latest is not None else timestamp
        due = [
            grant
            for grant in remaining_grants(_ordered_entries(session, account_id))
            if grant.entry.expires_at <= timestamp
        ]
        try:
            for grant in due:
                amount = min(grant.remaining, balance)
                if amount <= 0:
                    continue
                entry = post(
                    session,
                    account_id=account_id,
                    kind=LedgerEntryKind.EXPIRE,
                    delta=-amount,
                    reason=f"Points from entry #{grant.entry.ledger_entry_id} expired",
                    reference_type="ledger_entry",
                    reference_id=str(grant.entry.ledger_entry_id),
                    offsets_entry_id=grant.entry.ledger_entry_id,
                    expected_balance=balance,
                    now=posted_at,
                )
                balance = entry.balance_after
                posted.append(entry)
            return posted
        except ConcurrentUpdateError:
            if attempt:
                raise
            logger.info("account %s changed during point expiry; recomputing", account_id)

    return posted


def sweep_expired_points(
    session: Session,
    *,
    now: Optional[datetime] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    commit_each: bool = False,
) -> dict[str, int]:
    """Expire due grants for every account.

    With ``commit_each`` every account is committed on its own so row locks
    stay short, and an account that fails is rolled back, logged and skipped.
    Otherwise the caller owns the transaction and errors propagate.

    Returns summary statistics useful for logging/testing.
    """

    timestamp = to_naive_utc(now) or utcnow()
    summary = {"accounts_processed": 0, "entries_expired": 0, "points_expired": 0}

    account_ids = accounts_with_due_points(session, now=timestamp)
    if commit_each:
        session.commit()

    for account_id in account_ids:
        if should_stop is not None and should_stop():
            logger.info("point expiry sweep stopped after %d accounts", summary["accounts_processed"])
            break
        if not commit_each:
            expired = expire_account_points(session, account_id, now=timestamp)
        else:
            try:
                expired = expire_account_points(session, account_id, now=timestamp)
                session.commit()
            except Exception:
                session.rollback()
                logger.exception("point expiry failed for account %s", account_id)
                continue
        summary["accounts_processed"] += 1
        summary["entries_expired"] += len(expired)
        summary["points_expired"] += sum(-entry.points_delta for entry in expired)

    return summary
