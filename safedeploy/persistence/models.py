"""Data models for persisted execution history."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class ActionRecord(BaseModel):
    """Record of one attempt at an action."""

    id: Optional[int] = None
    execution_id: str
    stage: str
    action: str
    attempt: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: Optional[str] = None
    output: Optional[dict[str, Any]] = None
