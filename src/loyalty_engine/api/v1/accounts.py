"""Account balance, ledger, award and rank endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...models import LedgerEntryKind
from ...schemas import (
    AccountAuditRead,
    AwardCreate,
    AwardResult,
    BalanceRead,
    LedgerEntryCreate,
    LedgerEntryRead,
    PointsSummaryRead,
    RankAssign,
    RankHistoryRead,
    RankRead,
)
from ...services import ledger_service, point_rule_service, rank_service
from ...services.errors import LoyaltyError
from ...services.point_rule_service import AwardContext
from .errors import as_http_exception

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.put(
    "/{account_id}",
    response_model=BalanceRead,
    summary="Open an account",
    responses={500: {"description": "Rank configuration error"}},
)
def open_account(account_id: UUID, db: Session = Depends(get_db)) -> BalanceRead:
    """Open the loyalty account for an authenticated user; idempotent."""

    try:
        ledger_service.ensure_account(db, account_id)
        db.commit()
        return BalanceRead.model_validate(ledger_service.get_balance(db, account_id))
    except LoyaltyError as exc:
        db.rollback()
        raise as_http_exception(exc) from exc


@router.get("/{account_id}/balance", response_model=BalanceRead, summary="Current balance")
def get_balance(account_id: UUID, db: Session = Depends(get_db)) -> BalanceRead:
    try:
        return BalanceRead.model_validate(ledger_service.get_balance(db, account_id))
    except LoyaltyError as exc:
        raise as_http_exception(exc) from exc


@router.get("/{account_id}/ledger", response_model=List[LedgerEntryRead], summary="Ledger history")
def get_ledger_history(
    account_id: UUID,
    start: Optional[datetime] = Query(None, description="Inclusive lower bound on created_at"),
    end: Optional[datetime] = Query(None, description="Exclusive upper bound on created_at"),
    kind: Optional[LedgerEntryKind] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[LedgerEntryRead]:
    """Return ledger entries newest first."""

    try:
        entries = ledger_service.get_ledger_history(
            db,
            account_id,
            start=start,
            end=end,
            kind=kind,
            limit=limit,
            offset=offset,
        )
    except LoyaltyError as exc:
        raise as_http_exception(exc) from exc
    return [LedgerEntryRead.model_validate(entry) for entry in entries]


@router.post(
    "/{account_id}/ledger",
    response_model=LedgerEntryRead,
    status_code=status.HTTP_201_CREATED,
    summary="Post a ledger entry",
    responses={
        201: {
            "description": "Entry posted",
            "content": {
                "application/json": {
                    "example": {
                        "ledger_entry_id": 42,
                        "account_id": "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa",
                        "kind": "admin_adjust",
                        "points_delta": 150,
                        "balance_after": 650,
                        "reason": "Goodwill credit for delayed event",
                        "reference_type": None,
                        "reference_id": None,
                        "event_type": None,
                        "expires_at": None,
                        "created_by": "admin@example.com",
                        "admin_note": "Ticket #1182",
                        "created_at": "2025-11-12T10:15:30",
                    }
                }
            },
        },
        400: {"description": "Invalid delta or insufficient balance"},
        404: {"description": "Account not found"},
        422: {"description": "Missing actor or reason"},
    },
)
def post_ledger_entry(
    account_id: UUID,
    payload: LedgerEntryCreate,
    db: Session = Depends(get_db),
) -> LedgerEntryRead:
    """Post a manual entry; administrator adjustments must name the actor.

    Example request body::

        {
            "kind": "admin_adjust",
            "points_delta": 150,
            "reason": "Goodwill credit for delayed event",
            "actor": "admin@example.com",
            "admin_note": "Ticket #1182"
        }
    """

    try:
        entry = ledger_service.post(
            db,
            account_id=account_id,
            kind=payload.kind,
            delta=payload.points_delta,
            reason=payload.reason,
            reference_type=payload.reference_type,
            reference_id=payload.reference_id,
            expires_at=payload.expires_at,
            actor=payload.actor,
            admin_note=payload.admin_note,
        )
        db.commit()
        db.refresh(entry)
        return LedgerEntryRead.model_validate(entry)
    except LoyaltyError as exc:
        db.rollback()
        raise as_http_exception(exc) from exc


@router.get("/{account_id}/audit", response_model=AccountAuditRead, summary="Replay the ledger")
def audit_account(account_id: UUID, db: Session = Depends(get_db)) -> AccountAuditRead:
    try:
        return AccountAuditRead.model_validate(ledger_service.replay_account(db, account_id))
    except LoyaltyError as exc:
        raise as_http_exception(exc) from exc


@router.post(
    "/{account_id}/awards",
    response_model=AwardResult,
    summary="Award points for an event",
    responses={
        200: {
            "description": "Award evaluated; entry is null when nothing was posted",
            "content": {
                "application/json": {
                    "example": {
                        "awarded": True,
                        "points": 50,
                        "requested_points": 60,
                        "capped_by": "daily_cap_reached",
                        "reason": None,
                        "entry": {
                            "ledger_entry_id": 43,
                            "account_id": "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa",
                            "kind": "earn",
                            "points_delta": 50,
                            "balance_after": 700,
                            "reason": "Purchase points",
                            "reference_type": "order",
                            "reference_id": "ORD-1001",
                            "event_type": "purchase",
                            "expires_at": None,
                            "created_by": None,
                            "admin_note": None,
                            "created_at": "2025-11-12T10:20:00",
                        },
                    }
                }
            },
        },
        422: {"description": "Malformed context"},
        500: {"description": "Rank or rule configuration error"},
    },
)
def award_for_event(
    account_id: UUID,
    payload: AwardCreate,
    db: Session = Depends(get_db),
) -> AwardResult:
    """Evaluate point rules for a qualifying event and post the award.

    Example request body::

        {
            "event_type": "purchase",
            "order_value": 600000,
            "reference_type": "order",
            "reference_id": "ORD-1001"
        }
    """

    try:
        entry, quote = point_rule_service.award_with_quote(
            db,
            account_id=account_id,
            event_type=payload.event_type,
            context=AwardContext(
                order_value=payload.order_value,
                reference_type=payload.reference_type,
                reference_id=payload.reference_id,
                reason=payload.reason,
            ),
        )
        db.commit()
        if entry is not None:
            db.refresh(entry)
        return AwardResult(
            awarded=entry is not None,
            points=entry.points_delta if entry is not None else 0,
            requested_points=quote.base_points,
            capped_by=quote.capped_by,
            reason=quote.reason,
            entry=LedgerEntryRead.model_validate(entry) if entry is not None else None,
        )
    except LoyaltyError as exc:
        db.rollback()
        raise as_http_exception(exc) from exc


@router.get("/{account_id}/rank", response_model=Optional[RankRead], summary="Current rank")
def get_current_rank(account_id: UUID, db: Session = Depends(get_db)) -> Optional[RankRead]:
    try:
        rank = rank_service.get_current_rank(db, account_id)
    except LoyaltyError as exc:
        raise as_http_exception(exc) from exc
    return RankRead.model_validate(rank) if rank is not None else None


@router.put(
    "/{account_id}/rank",
    response_model=Optional[RankHistoryRead],
    summary="Override rank",
    responses={404: {"description": "Account or rank not found"}},
)
def assign_rank(
    account_id: UUID,
    payload: RankAssign,
    db: Session = Depends(get_db),
) -> Optional[RankHistoryRead]:
    """Administrator override of an account's rank; returns null when unchanged."""

    try:
        history = rank_service.assign_rank(
            db,
            account_id=account_id,
            rank_id=payload.rank_id,
            actor=payload.actor,
        )
        db.commit()
        if history is None:
            return None
        db.refresh(history)
        return RankHistoryRead.model_validate(history)
    except LoyaltyError as exc:
        db.rollback()
        raise as_http_exception(exc) from exc


@router.get("/{account_id}/rank-history", response_model=List[RankHistoryRead], summary="Rank transitions")
def get_rank_history(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[RankHistoryRead]:
    try:
        history = rank_service.get_rank_history(db, account_id, limit=limit, offset=offset)
    except LoyaltyError as exc:
        raise as_http_exception(exc) from exc
    return [RankHistoryRead.model_validate(row) for row in history]


@router.get("/{account_id}/points-summary", response_model=PointsSummaryRead, summary="Points and rank summary")
def get_points_summary(account_id: UUID, db: Session = Depends(get_db)) -> PointsSummaryRead:
    try:
        return PointsSummaryRead.model_validate(rank_service.points_summary(db, account_id))
    except LoyaltyError as exc:
        raise as_http_exception(exc) from exc
