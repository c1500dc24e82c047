"""Pydantic schemas for ledger endpoints."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..models import LedgerEntryKind


class LedgerEntryCreate(BaseModel):
    """Manual posting, typically an administrator adjustment."""

    kind: LedgerEntryKind
    points_delta: int = Field(..., description="Signed point delta; must be non-zero and agree with kind.")
    reason: str = Field(..., min_length=1, max_length=280)
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    actor: Optional[str] = Field(None, description="Administrator identity, required for admin_adjust.")
    admin_note: Optional[str] = Field(None, max_length=1000)


class LedgerEntryRead(BaseModel):
    """Immutable ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    ledger_entry_id: int
    account_id: UUID
    kind: LedgerEntryKind
    points_delta: int
    balance_after: int
    reason: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    event_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None
    admin_note: Optional[str] = None
    created_at: datetime


class BalanceRead(BaseModel):
    """Current and lifetime balances of an account."""

    model_config = ConfigDict(from_attributes=True)

    account_id: UUID
    current_points: int = Field(..., ge=0)
    lifetime_points: int = Field(..., ge=0)


class AccountAuditRead(BaseModel):
    """Stored balances compared against a replay of the ledger."""

    model_config = ConfigDict(from_attributes=True)

    account_id: UUID
    stored_current_points: int
    stored_lifetime_points: int
    replayed_current_points: int
    replayed_lifetime_points: int
    entry_count: int
    first_broken_entry_id: Optional[int] = None
    consistent: bool
