"""Voucher acquisition, redemption and expiry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from ..models import Account, LedgerEntryKind, Rank, UserVoucher, UserVoucherStatus, Voucher, VoucherType
from ..utils.datetime import to_naive_utc, utcnow
from . import ledger_service
from .errors import (
    AccountNotFound,
    InsufficientBalance,
    InvalidContext,
    VoucherExhausted,
    VoucherNotAvailable,
    VoucherNotEligible,
    VoucherNotFound,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class DiscountResult:
    """Discount applied to an order by a redeemed voucher."""

    user_voucher_id: UUID
    voucher_code: str
    voucher_type: VoucherType
    order_id: str
    order_value: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    free_shipping: bool = False
    gift: bool = False


@dataclass(frozen=True)
class VoucherStats:
    total_available: int
    used_count: int
    expired_count: int
    total_saved: Decimal


def _money(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidContext(f"{field} {value!r} is not a number.") from exc
    if not amount.is_finite() or amount < 0:
        raise InvalidContext(f"{field} must be a non-negative number.")
    return amount


def _get_voucher(session: Session, voucher_id: UUID) -> Voucher:
    voucher = session.get(Voucher, voucher_id, populate_existing=True)
    if voucher is None:
        raise VoucherNotFound(f"Voucher {voucher_id} not found")
    return voucher


def _rank_level(session: Session, rank_id: Optional[UUID]) -> Optional[int]:
    if rank_id is None:
        return None
    rank = session.get(Rank, rank_id)
    return rank.level if rank is not None else None


def _acquisitions(session: Session, account_id: UUID, voucher_id: UUID) -> int:
    stmt = select(func.count(UserVoucher.user_voucher_id)).where(
        UserVoucher.account_id == account_id,
        UserVoucher.voucher_id == voucher_id,
    )
    return int(session.execute(stmt).scalar_one())


def _ineligibility(
    session: Session,
    account: Account,
    voucher: Voucher,
    *,
    now: datetime,
    acquisitions: int,
) -> Optional[str]:
    if not voucher.is_active:
        return "Voucher is not active."
    if now < voucher.valid_from or now > voucher.valid_until:
        return "Voucher is expired or not yet valid."
    if voucher.required_rank_id is not None:
        required_level = _rank_level(session, voucher.required_rank_id)
        account_level = _rank_level(session, account.rank_id)
        if required_level is not None and (account_level is None or account_level < required_level):
            return "Your rank is not high enough for this voucher."
    if acquisitions >= voucher.max_usage_per_user:
        return "You have reached the maximum usage limit for this voucher."
    return None


def _claim_usage_slot(session: Session, voucher_id: UUID, *, now: datetime) -> bool:
    """Atomically increment ``current_usage`` unless the global cap is reached."""

    stmt = (
        update(Voucher)
        .where(
            Voucher.voucher_id == voucher_id,
            or_(Voucher.max_total_usage.is_(None), Voucher.current_usage < Voucher.max_total_usage),
        )
        .values(current_usage=Voucher.current_usage + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def acquire(
    session: Session,
    *,
    account_id: UUID,
    voucher_id: UUID,
    now: Optional[datetime] = None,
) -> UserVoucher:
    """Spend points on a voucher and give the account an available copy of it.

    The caller owns the transaction and must roll back on any raised error so
    the claimed usage slot and the spend are undone together.
    """

    timestamp = to_naive_utc(now) or utcnow()

    account = ledger_service.lock_account(session, account_id)
    voucher = _get_voucher(session, voucher_id)

    problem = _ineligibility(
        session,
        account,
        voucher,
        now=timestamp,
        acquisitions=_acquisitions(session, account.account_id, voucher.voucher_id),
    )
    if problem:
        raise VoucherNotEligible(problem)
    if voucher.is_exhausted:
        raise VoucherExhausted("This voucher has been fully redeemed.")
    if account.current_points < voucher.required_points:
        raise InsufficientBalance(
            f"Insufficient points: balance is {account.current_points}, {voucher.required_points} required."
        )

    if not _claim_usage_slot(session, voucher.voucher_id, now=timestamp):
        session.refresh(voucher)
        if voucher.is_exhausted or not _claim_usage_slot(session, voucher.voucher_id, now=timestamp):
            logger.info("voucher %s exhausted during acquisition by %s", voucher.code, account_id)
            raise VoucherExhausted("This voucher has been fully redeemed.")
    session.refresh(voucher)

    if voucher.required_points > 0:
        ledger_service.post(
            session,
            account_id=account.account_id,
            kind=LedgerEntryKind.SPEND,
            delta=-voucher.required_points,
            reason=f"Redeemed voucher: {voucher.code}",
            reference_type="voucher",
            reference_id=str(voucher.voucher_id),
            now=timestamp,
        )

    user_voucher = UserVoucher(
        account_id=account.account_id,
        voucher_id=voucher.voucher_id,
        status=UserVoucherStatus.AVAILABLE,
        acquired_at=timestamp,
        expires_at=voucher.valid_until,
        points_spent=voucher.required_points,
    )
    session.add(user_voucher)
    session.flush()
    logger.info(
        "account %s acquired voucher %s (%d/%s used)",
        account_id,
        voucher.code,
        voucher.current_usage,
        voucher.max_total_usage if voucher.max_total_usage is not None else "unlimited",
    )
    return user_voucher


def compute_discount(voucher: Voucher, order_value: Decimal, shipping_fee: Decimal = Decimal("0")) -> Decimal:
    """Discount granted by ``voucher`` on an order, rounded down to cents."""

    magnitude = Decimal(voucher.discount_value) if voucher.discount_value is not None else Decimal("0")
    voucher_type = VoucherType(voucher.voucher_type)

    if voucher_type == VoucherType.PERCENTAGE:
        discount = order_value * magnitude / Decimal("100")
        ceiling = order_value
    elif voucher_type == VoucherType.FIXED:
        discount = magnitude
        ceiling = order_value
    elif voucher_type == VoucherType.FREE_SHIPPING:
        discount = shipping_fee
        ceiling = shipping_fee
    else:
        return Decimal("0.00")

    if voucher.max_discount is not None:
        discount = min(discount, Decimal(voucher.max_discount))
    discount = max(min(discount, ceiling), Decimal("0"))
    return discount.quantize(CENT, rounding=ROUND_DOWN)


def _lock_user_voucher(session: Session, user_voucher_id: UUID) -> UserVoucher:
    stmt = (
        select(UserVoucher)
        .where(UserVoucher.user_voucher_id == user_voucher_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user_voucher = session.execute(stmt).scalar_one_or_none()
    if user_voucher is None:
        raise VoucherNotFound(f"User voucher {user_voucher_id} not found")
    return user_voucher


def _check_exclusivity(session: Session, voucher: Voucher, order_id: str) -> None:
    stmt = (
        select(Voucher.is_exclusive)
        .join(UserVoucher, UserVoucher.voucher_id == Voucher.voucher_id)
        .where(UserVoucher.order_id == order_id, UserVoucher.status == UserVoucherStatus.USED)
    )
    applied = session.execute(stmt).scalars().all()
    if not applied:
        return
    if voucher.is_exclusive:
        raise VoucherNotEligible("An exclusive voucher cannot be combined with other vouchers.")
    if any(applied):
        raise VoucherNotEligible("This order already uses an exclusive voucher.")


def _finish(
    session: Session,
    user_voucher_id: UUID,
    status: UserVoucherStatus,
    **values,
) -> bool:
    """Move an available voucher to a final status; False if it was no longer available."""

    stmt = (
        update(UserVoucher)
        .where(
            UserVoucher.user_voucher_id == user_voucher_id,
            UserVoucher.status == UserVoucherStatus.AVAILABLE,
        )
        .values(status=status, **values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def redeem(
    session: Session,
    *,
    user_voucher_id: UUID,
    order_id: str,
    order_value,
    shipping_fee=Decimal("0"),
    account_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> DiscountResult:
    """Apply an acquired voucher to an order. Final: a used voucher never becomes available again."""

    order_total = _money(order_value, "Order value")
    shipping = _money(shipping_fee, "Shipping fee")
    if not order_id:
        raise InvalidContext("An order reference is required.")
    timestamp = to_naive_utc(now) or utcnow()

    user_voucher = _lock_user_voucher(session, user_voucher_id)
    if account_id is not None and user_voucher.account_id != account_id:
        raise VoucherNotAvailable("This voucher does not belong to the account.")
    if user_voucher.status != UserVoucherStatus.AVAILABLE:
        raise VoucherNotAvailable(f"Voucher is {UserVoucherStatus(user_voucher.status).value}.")
    if user_voucher.expires_at is not None and user_voucher.expires_at <= timestamp:
        raise VoucherNotAvailable("Voucher has expired.")

    voucher = _get_voucher(session, user_voucher.voucher_id)
    if voucher.min_order_value is not None and order_total < Decimal(voucher.min_order_value):
        raise VoucherNotEligible(f"Order value must be at least {voucher.min_order_value}.")
    _check_exclusivity(session, voucher, order_id)

    discount = compute_discount(voucher, order_total, shipping)

    if not _finish(
        session,
        user_voucher.user_voucher_id,
        UserVoucherStatus.USED,
        used_at=timestamp,
        order_id=order_id,
        discount_amount=discount,
    ):
        raise VoucherNotAvailable("Voucher is no longer available.")
    session.refresh(user_voucher)

    voucher_type = VoucherType(voucher.voucher_type)
    logger.info("voucher %s redeemed on order %s for %s", voucher.code, order_id, discount)
    return DiscountResult(
        user_voucher_id=user_voucher.user_voucher_id,
        voucher_code=voucher.code,
        voucher_type=voucher_type,
        order_id=order_id,
        order_value=order_total,
        discount_amount=discount,
        final_amount=max(order_total + shipping - discount, Decimal("0")).quantize(CENT),
        free_shipping=voucher_type == VoucherType.FREE_SHIPPING,
        gift=voucher_type == VoucherType.GIFT,
    )


def revoke(
    session: Session,
    *,
    user_voucher_id: UUID,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UserVoucher:
    """Administrator revocation of an unused voucher."""

    if not actor:
        raise InvalidContext("Revoking a voucher requires an actor.")
    timestamp = to_naive_utc(now) or utcnow()

    user_voucher = _lock_user_voucher(session, user_voucher_id)
    if not _finish(
        session,
        user_voucher.user_voucher_id,
        UserVoucherStatus.REVOKED,
        revoked_at=timestamp,
        revoked_by=actor,
        status_reason=reason,
    ):
        raise VoucherNotAvailable("Only available vouchers can be revoked.")
    session.refresh(user_voucher)
    logger.info("user voucher %s revoked by %s", user_voucher_id, actor)
    return user_voucher


def sweep_expired(session: Session, *, now: Optional[datetime] = None) -> int:
    """Expire available vouchers past their personal expiry; used/revoked ones are untouched."""

    timestamp = to_naive_utc(now) or utcnow()
    stmt = (
        update(UserVoucher)
        .where(
            UserVoucher.status == UserVoucherStatus.AVAILABLE,
            UserVoucher.expires_at.is_not(None),
            UserVoucher.expires_at <= timestamp,
        )
        .values(status=UserVoucherStatus.EXPIRED, status_reason="expired")
        .execution_options(synchronize_session=False)
    )
    expired = session.execute(stmt).rowcount
    if expired:
        logger.info("expired %d unused vouchers", expired)
    return expired


def list_available_vouchers(
    session: Session,
    account_id: UUID,
    *,
    now: Optional[datetime] = None,
) -> list[Voucher]:
    """Vouchers the account could acquire right now, cheapest first."""

    timestamp = to_naive_utc(now) or utcnow()
    account = session.get(Account, account_id, populate_existing=True)
    if account is None:
        raise AccountNotFound(f"Account {account_id} not found")

    stmt = (
        select(Voucher)
        .where(
            Voucher.is_active.is_(True),
            Voucher.valid_from <= timestamp,
            Voucher.valid_until >= timestamp,
        )
        .order_by(Voucher.required_points.asc(), Voucher.code.asc())
    )
    vouchers = session.execute(stmt).scalars().all()

    counts_stmt = (
        select(UserVoucher.voucher_id, func.count(UserVoucher.user_voucher_id))
        .where(UserVoucher.account_id == account_id)
        .group_by(UserVoucher.voucher_id)
    )
    acquisitions = dict(session.execute(counts_stmt).all())

    available = []
    for voucher in vouchers:
        if voucher.is_exhausted or account.current_points < voucher.required_points:
            continue
        problem = _ineligibility(
            session,
            account,
            voucher,
            now=timestamp,
            acquisitions=acquisitions.get(voucher.voucher_id, 0),
        )
        if problem is None:
            available.append(voucher)
    return available


def list_user_vouchers(
    session: Session,
    account_id: UUID,
    *,
    status: Optional[UserVoucherStatus] = None,
) -> Sequence[UserVoucher]:
    stmt = (
        select(UserVoucher)
        .options(joinedload(UserVoucher.voucher))
        .where(UserVoucher.account_id == account_id)
        .order_by(UserVoucher.acquired_at.desc())
    )
    if status is not None:
        stmt = stmt.where(UserVoucher.status == UserVoucherStatus(status))
    return session.execute(stmt).scalars().all()


def voucher_stats(session: Session, account_id: UUID) -> VoucherStats:
    stmt = (
        select(
            UserVoucher.status,
            func.count(UserVoucher.user_voucher_id),
            func.coalesce(func.sum(UserVoucher.discount_amount), 0),
        )
        .where(UserVoucher.account_id == account_id)
        .group_by(UserVoucher.status)
    )
    counts: dict[UserVoucherStatus, int] = {}
    saved = Decimal("0")
    for status, count, discount_total in session.execute(stmt).all():
        counts[UserVoucherStatus(status)] = int(count)
        if UserVoucherStatus(status) == UserVoucherStatus.USED:
            saved = Decimal(str(discount_total))
    return VoucherStats(
        total_available=counts.get(UserVoucherStatus.AVAILABLE, 0),
        used_count=counts.get(UserVoucherStatus.USED, 0),
        expired_count=counts.get(UserVoucherStatus.EXPIRED, 0),
        total_saved=saved.quantize(CENT),
    )
