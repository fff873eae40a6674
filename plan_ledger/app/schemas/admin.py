"""
Admin API Schema Definitions.

Pydantic schemas for the operations endpoints.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Dict, Any, Literal
from plan_ledger.app.models.dlq import DLQStatus


class DeadLetterResponse(BaseModel):
    """Schema for a dead letter queue entry."""
    id: int
    task_name: str
    error_message: str
    payload: Optional[Dict[str, Any]] = None
    status: DLQStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    class Config:
        from_attributes = True


class DeadLetterResolveRequest(BaseModel):
    status: Literal["PROCESSED", "ARCHIVED"] = "PROCESSED"
