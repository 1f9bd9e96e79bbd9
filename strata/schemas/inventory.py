"""
Inventory Sync Schemas

Request and response models for triggering syncs and reading task status.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncRequest(BaseModel):
    """Run one resource kind for one provider scope."""
    provider: str = Field(..., min_length=1, max_length=64)
    scope: str = Field(..., min_length=1, max_length=255)
    kind: str = Field(..., min_length=1, max_length=128)


class SyncGroupRequest(BaseModel):
    """Run several kinds of one provider scope; all registered kinds when omitted."""
    provider: str = Field(..., min_length=1, max_length=64)
    scope: str = Field(..., min_length=1, max_length=255)
    kinds: Optional[List[str]] = None


class SyncTaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: str
    group_id: Optional[str] = None
    provider: str
    scope: str
    kind: str
    state: str
    attempts: int
    item_count: int
    duration_ms: int
    collected_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SyncGroupResponse(BaseModel):
    group_id: str
    provider: str
    scope: str
    attempts: int
    tasks: List[SyncTaskResponse] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    kind: str
    scope: str
    ok: bool
    violations: List[str] = Field(default_factory=list)
