"""
Calendar event Pydantic models.
"""
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, List


class CalendarEvent(BaseModel):
    """Calendar event as the tool layer sees it."""
    id: str
    title: str
    start: Optional[str] = None
    end: Optional[str] = None
    timezone: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: List[str] = []
    reminders: List[int] = []  # minutes before start
    html_link: Optional[str] = None


class EventDraft(BaseModel):
    """Fields for creating or partially updating an event."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    timezone: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: Optional[List[str]] = None
    reminders: Optional[List[str]] = None
