"""
Session-related Pydantic models.
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Credentials(BaseModel):
    """OAuth credential bundle for one calendar connection."""
    access_token: str
    refresh_token: Optional[str] = None
    expiry: datetime

    def expires_within(self, now: datetime, seconds: float) -> bool:
        """True if the access token expires within `seconds` of `now`."""
        return (self.expiry - now).total_seconds() <= seconds


class Session(BaseModel):
    """Server-held session data."""
    id: str
    credentials: Credentials
    created_at: datetime = Field(default_factory=utc_now)

    # Per-session state
    cached_prompt: Optional[str] = None
    preferred_model: Optional[str] = None


class SessionValidation(BaseModel):
    """Result of validating a session id."""
    valid: bool
    reason: str  # ok, not_found, expired
    message: str
    created_at: Optional[datetime] = None
