from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from erasure.models.account import DeletionState


class DeletionRequestCreate(BaseModel):
    confirm: bool = False
    reason: str | None = Field(default=None, max_length=1000)
    grace_period_days: int | None = Field(default=None, ge=1, le=365)


class DeletionStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: UUID
    state: DeletionState
    is_active: bool
    requested_at: datetime | None = None
    scheduled_at: datetime | None = None
    reason: str | None = None
    days_remaining: int | None = None
    can_cancel: bool = False


class DeletionInfoRead(BaseModel):
    grace_period_days: int
    final_warning_minutes: int
    what_gets_deleted: list[str]
    what_happens: list[str]


class AdminDeletionItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: str | None = None
    deletion_requested_at: datetime | None = None
    deletion_scheduled_at: datetime | None = None
    deletion_reason: str | None = None
    purge_started_at: datetime | None = None
    deletion_failed_at: datetime | None = None
    deletion_failure_reason: str | None = None
    deletion_state: DeletionState


class AdminDeletionListResponse(BaseModel):
    items: list[AdminDeletionItem]


class DueDeletionsResponse(BaseModel):
    account_ids: list[UUID]


class DeletionSweepRead(BaseModel):
    processed: int
    outcomes: dict[str, int]
    errors: list[dict[str, str]] = Field(default_factory=list)
