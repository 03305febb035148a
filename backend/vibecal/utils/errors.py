"""
Custom error classes for the application.

Every error the orchestration core raises derives from AppError so the
routes can turn it into a user-presentable message and an HTTP status.
"""
from typing import Optional, List


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: int = 500,
        details: Optional[dict] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert error to dictionary for response."""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# AUTH
# =============================================================================

class AuthError(AppError):
    """Authentication related errors."""

    def __init__(self, message: str, code: str = "AUTH_ERROR"):
        super().__init__(message, code, status_code=401)


class SessionNotFoundError(AuthError):
    """No session is stored under the given id."""

    def __init__(self):
        super().__init__(
            "No valid session found. Please connect your Google Calendar.",
            "SESSION_NOT_FOUND"
        )


class SessionExpiredError(AuthError):
    """Session has expired and could not be refreshed."""

    def __init__(self):
        super().__init__(
            "Your session has expired. Please reconnect your Google Calendar.",
            "SESSION_EXPIRED"
        )


class RefreshFailedError(AuthError):
    """Exchanging the refresh token for a new access token failed."""

    def __init__(self, message: str = "Failed to refresh access token."):
        super().__init__(message, "REFRESH_FAILED")


class PermissionRevokedError(RefreshFailedError):
    """Calendar permissions were revoked."""

    def __init__(self):
        super().__init__(
            "Google Calendar access was revoked. Please sign in and grant permissions again."
        )
        self.code = "PERMISSION_REVOKED"


# =============================================================================
# TOOL VALIDATION
# =============================================================================

class ValidationError(AppError):
    """A tool request that can never succeed as sent."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", status_code: int = 400, details: Optional[dict] = None):
        super().__init__(message, code, status_code=status_code, details=details)


class UnknownToolError(ValidationError):
    """The model asked for a tool that is not in the catalog."""

    def __init__(self, tool_name: str):
        super().__init__(
            f"Unknown tool: {tool_name}",
            "UNKNOWN_TOOL",
            details={"tool": tool_name},
        )


class InvalidParametersError(ValidationError):
    """Required tool parameters are missing."""

    def __init__(self, tool_name: str, missing: List[str]):
        super().__init__(
            f"Missing required parameters for {tool_name}: {', '.join(missing)}",
            "INVALID_PARAMETERS",
            details={"tool": tool_name, "missing": missing},
        )
        self.missing = missing


class PendingConfirmationNotFoundError(ValidationError):
    """Confirm was called for an invocation that is not awaiting confirmation."""

    def __init__(self, tool_name: str):
        super().__init__(
            f"No pending confirmation for {tool_name}. Ask again and confirm the new request.",
            "NO_PENDING_CONFIRMATION",
            status_code=409,
            details={"tool": tool_name},
        )


# =============================================================================
# EXTERNAL SERVICES
# =============================================================================

class TransientServiceError(AppError):
    """5xx, connection reset or timeout from an external service."""

    def __init__(self, message: str = "Service temporarily unavailable. Please try again.", status: Optional[int] = None):
        super().__init__(message, "TRANSIENT_SERVICE_ERROR", status_code=503, details={"status": status})
        self.status = status


class SaturationError(AppError):
    """Rate limit, quota or service-unavailable response."""

    def __init__(self, message: str = "Too many requests. Please wait a moment.", status: Optional[int] = 429):
        super().__init__(message, "RATE_LIMITED", status_code=429, details={"status": status})
        self.status = status


class ParseError(AppError):
    """Completion reply is not valid structured output."""

    def __init__(self, message: str = "AI returned invalid response format."):
        super().__init__(message, "PARSE_ERROR", status_code=502)


class AIError(AppError):
    """AI service related errors."""

    def __init__(self, message: str = "AI processing failed. Please try again."):
        super().__init__(message, "AI_ERROR", status_code=503)


class AllModelsExhaustedError(AIError):
    """Every model in the roster failed for this request."""

    def __init__(self, attempted: Optional[List[str]] = None):
        super().__init__("The AI assistant is temporarily unavailable. Please try again in a moment.")
        self.code = "AI_UNAVAILABLE"
        self.details = {"attempted": attempted or []}


class CalendarError(AppError):
    """Google Calendar API related errors."""

    def __init__(self, message: str = "Couldn't reach Google Calendar. Please try again."):
        super().__init__(message, "CALENDAR_ERROR", status_code=503)


class CalendarRateLimitError(SaturationError):
    """Google Calendar rate limit exceeded."""

    def __init__(self):
        super().__init__("Google Calendar rate limit exceeded. Please try again later.")


class EventGoneError(AppError):
    """Event no longer exists on the calendar."""

    def __init__(self, event_id: str = ""):
        message = f"Event '{event_id}' no longer exists." if event_id else "Event not found."
        super().__init__(message, "EVENT_NOT_FOUND", status_code=404)
        self.event_id = event_id


class AllRetriesExhaustedError(AppError):
    """Calendar call kept failing after every retry."""

    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"Google Calendar is busy, {operation} failed after {attempts} attempts. Please try again later.",
            "RETRIES_EXHAUSTED",
            status_code=503,
            details={"operation": operation, "attempts": attempts},
        )
