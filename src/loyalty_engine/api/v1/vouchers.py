"""Endpoints for voucher browsing, acquisition and redemption."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...models import UserVoucherStatus
from ...schemas import (
    DiscountRead,
    UserVoucherRead,
    VoucherAcquire,
    VoucherRead,
    VoucherRedeem,
    VoucherRevoke,
    VoucherStatsRead,
)
from ...services import voucher_service
from ...services.errors import LoyaltyError
from .errors import as_http_exception

router = APIRouter(tags=["vouchers"])


@router.get(
    "/accounts/{account_id}/vouchers/available",
    response_model=List[VoucherRead],
    summary="Vouchers the account can acquire",
)
def list_available_vouchers(account_id: UUID, db: Session = Depends(get_db)) -> List[VoucherRead]:
    try:
        vouchers = voucher_service.list_available_vouchers(db, account_id)
    except LoyaltyError as exc:
        raise as_http_exception(exc) from exc
    return [VoucherRead.model_validate(voucher) for voucher in vouchers]


@router.get(
    "/accounts/{account_id}/vouchers",
    response_model=List[UserVoucherRead],
    summary="Vouchers held by the account",
)
def list_user_vouchers(
    account_id: UUID,
    voucher_status: Optional[UserVoucherStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
) -> List[UserVoucherRead]:
    user_vouchers = voucher_service.list_user_vouchers(db, account_id, status=voucher_status)
    return [UserVoucherRead.model_validate(user_voucher) for user_voucher in user_vouchers]


@router.get(
    "/accounts/{account_id}/vouchers/stats",
    response_model=VoucherStatsRead,
    summary="Voucher totals for the account",
)
def get_voucher_stats(account_id: UUID, db: Session = Depends(get_db)) -> VoucherStatsRead:
    return VoucherStatsRead.model_validate(voucher_service.voucher_stats(db, account_id))


@router.post(
    "/accounts/{account_id}/vouchers",
    response_model=UserVoucherRead,
    status_code=status.HTTP_201_CREATED,
    summary="Acquire a voucher with points",
    responses={
        201: {
            "description": "Voucher acquired",
            "content": {
                "application/json": {
                    "example": {
                        "user_voucher_id": "99999999-9999-9999-9999-999999999999",
                        "account_id": "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa",
                        "voucher": {
                            "voucher_id": "77777777-7777-7777-7777-777777777777",
                            "code": "GOLD10",
                            "name": "10% off for Gold members",
                            "description": None,
                            "voucher_type": "percentage",
                            "discount_value": "10.00",
                            "max_discount": "50000.00",
                            "min_order_value": "200000.00",
                            "required_rank_id": None,
                            "required_points": 300,
                            "max_usage_per_user": 1,
                            "max_total_usage": 100,
                            "current_usage": 12,
                            "valid_from": "2025-11-01T00:00:00",
                            "valid_until": "2025-12-31T23:59:59",
                            "is_exclusive": False,
                        },
                        "status": "available",
                        "acquired_at": "2025-11-12T14:30:00",
                        "used_at": None,
                        "expires_at": "2025-12-31T23:59:59",
                        "order_id": None,
                        "points_spent": 300,
                        "discount_amount": None,
                        "revoked_at": None,
                        "revoked_by": None,
                        "status_reason": None,
                    }
                }
            },
        },
        400: {"description": "Not eligible or insufficient balance"},
        404: {"description": "Account or voucher not found"},
        409: {"description": "Voucher exhausted"},
    },
)
def acquire_voucher(
    account_id: UUID,
    payload: VoucherAcquire,
    db: Session = Depends(get_db),
) -> UserVoucherRead:
    """Spend points on a voucher.

    Example request body::

        {
            "voucher_id": "77777777-7777-7777-7777-777777777777"
        }
    """

    try:
        user_voucher = voucher_service.acquire(db, account_id=account_id, voucher_id=payload.voucher_id)
        db.commit()
        db.refresh(user_voucher)
        return UserVoucherRead.model_validate(user_voucher)
    except LoyaltyError as exc:
        db.rollback()
        raise as_http_exception(exc) from exc


@router.post(
    "/user-vouchers/{user_voucher_id}/redeem",
    response_model=DiscountRead,
    summary="Apply a voucher to an order",
    responses={
        400: {"description": "Order does not qualify"},
        404: {"description": "Voucher not found"},
        409: {"description": "Voucher already used, expired or revoked"},
    },
)
def redeem_voucher(
    user_voucher_id: UUID,
    payload: VoucherRedeem,
    db: Session = Depends(get_db),
) -> DiscountRead:
    """Called by checkout while finalising a purchase; the redemption is final.

    Example request body::

        {
            "account_id": "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa",
            "order_id": "ORD-1001",
            "order_value": 450000,
            "shipping_fee": 30000
        }
    """

    try:
        result = voucher_service.redeem(
            db,
            user_voucher_id=user_voucher_id,
            account_id=payload.account_id,
            order_id=payload.order_id,
            order_value=payload.order_value,
            shipping_fee=payload.shipping_fee,
        )
        db.commit()
        return DiscountRead.model_validate(result)
    except LoyaltyError as exc:
        db.rollback()
        raise as_http_exception(exc) from exc


@router.post(
    "/user-vouchers/{user_voucher_id}/revoke",
    response_model=UserVoucherRead,
    summary="Revoke an unused voucher",
    responses={404: {"description": "Voucher not found"}, 409: {"description": "Voucher is not available"}},
)
def revoke_voucher(
    user_voucher_id: UUID,
    payload: VoucherRevoke,
    db: Session = Depends(get_db),
) -> UserVoucherRead:
    try:
        user_voucher = voucher_service.revoke(
            db,
            user_voucher_id=user_voucher_id,
            actor=payload.actor,
            reason=payload.reason,
        )
        db.commit()
        db.refresh(user_voucher)
        return UserVoucherRead.model_validate(user_voucher)
    except LoyaltyError as exc:
        db.rollback()
        raise as_http_exception(exc) from exc
