"""
System prompt for the calendar assistant.

The tool section is generated from the catalog and does not change between
requests, so it is cached on the session. The context section (timezone,
current time) is added on every request.
"""
from datetime import datetime
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from vibecal.models.session import utc_now
from vibecal.services.tool_service import TOOL_CATALOG, ToolSpec

FIELD_DESCRIPTIONS = {
    "title": "Event title",
    "start_time": "Start time (ISO 8601)",
    "end_time": "End time (ISO 8601)",
    "description": "Event details",
    "location": "Event location",
    "attendees": "List of attendee emails",
    "reminders": 'Reminders, e.g. "15 minutes before"',
    "timezone": "IANA timezone, defaults to the user's",
    "start_date": "Range start (ISO 8601), defaults to now",
    "end_date": "Range end (ISO 8601), defaults to 30 days after start",
    "search_term": "Search keyword",
    "event_id": "ID of the event, from query_events",
    "event_title": "Title of the event",
}

PROMPT_TEMPLATE = """You are Vibe, a friendly personal calendar assistant. Respond in the same language as the user. Apart from your own knowledge, you have access to the following tools to serve the user:

AVAILABLE TOOLS:
{tools}

TOOL CALLING FORMAT:
  {{
    "tools": [
      {{ "tool": "tool_name", "parameters": {{ ... }} }}
    ],
    "message": "your natural language reply"
  }}

CRITICAL RULES:
- If you call tools, your entire response must be a single JSON object as described above. No text outside the JSON object.
- Look up events with query_events before updating or deleting them; never invent event IDs.
- Updates and deletions are confirmed by the user before they run. Say what you are about to change.
- When you see "TOOL_RESULTS:" messages, these contain results from tools you previously called. Use them naturally and never mention tool output or JSON to the user."""

CONTEXT_TEMPLATE = """

CONTEXT:
User timezone: {timezone}
Current time: {now}"""


def build_tool_section(catalog: Dict[str, ToolSpec] = TOOL_CATALOG) -> str:
    """Describe every tool and its parameters."""
    lines = ["TOOLS:"]
    for spec in catalog.values():
        lines.append(f"- {spec.name}: {spec.description}")
        if spec.required or spec.optional:
            lines.append("  Input parameters:")
        for field in spec.required:
            lines.append(f"    - {field} (required): {FIELD_DESCRIPTIONS.get(field, field)}")
        for field in spec.optional:
            lines.append(f"    - {field} (optional): {FIELD_DESCRIPTIONS.get(field, field)}")
    return "\n".join(lines)


def build_static_prompt(catalog: Dict[str, ToolSpec] = TOOL_CATALOG) -> str:
    return PROMPT_TEMPLATE.format(tools=build_tool_section(catalog))


def build_system_prompt(static_prompt: str, timezone: str = "UTC", now: Optional[datetime] = None) -> str:
    """Append the user's timezone and local time to the static prompt."""
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        timezone, zone = "UTC", ZoneInfo("UTC")

    local_now = (now or utc_now()).astimezone(zone)
    return static_prompt + CONTEXT_TEMPLATE.format(
        timezone=timezone,
        now=local_now.strftime("%A, %B %d, %Y %I:%M %p"),
    )
