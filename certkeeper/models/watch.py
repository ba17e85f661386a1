"""
Watch models for filesystem change tracking and proxy actions.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class WatchEventKind(str, Enum):
    """Kinds of filesystem change that trigger a reload."""

    MODIFIED = "modified"
    CREATED = "created"
    DELETED = "deleted"
    MOVED = "moved"


class WatchEvent(BaseModel):
    """A single observed filesystem change. Coalesced by the debounce window."""

    path: str = Field(..., description="Path the event refers to")
    kind: WatchEventKind
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProxyActionResult(BaseModel):
    """Result of a render/validate/reload cycle against the proxy."""

    success: bool
    stage: str = Field(..., description="Last stage reached: render, validate or reload")
    message: Optional[str] = None
    output: Optional[str] = Field(None, description="Raw output from nginx, if any")
