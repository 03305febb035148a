"""
Authentication routes for Google OAuth.

OAuth Flow:
1. Frontend calls GET /api/auth/login → gets OAuth URL
2. Frontend redirects user to OAuth URL
3. User grants calendar permissions on Google
4. Google redirects to GET /api/auth/callback with code
5. Backend exchanges code for tokens, creates session
6. Backend redirects to frontend /dashboard with session cookie

Security:
- Session token is HTTP-only cookie (prevents XSS)
- The cookie holds a signed JWT of the session id only
- OAuth tokens stay server-side in the session store
"""
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from urllib.parse import quote

from vibecal.config import get_settings
from vibecal.dependencies import get_session_service, session_id_from_request
from vibecal.integrations.google_auth import exchange_code_for_tokens, get_oauth_url
from vibecal.services.session_service import SessionService, issue_session_token
from vibecal.utils.logger import get_logger, short_id
from vibecal.utils.errors import AppError

router = APIRouter()
logger = get_logger(__name__)
settings = get_settings()


def _cookie_is_secure() -> bool:
    # Localhost over HTTP should NOT use secure=True
    return "https" in settings.frontend_url and "localhost" not in settings.frontend_url


@router.get("/login")
async def login():
    """
    Get Google OAuth login URL.

    Returns:
        { auth_url: "https://accounts.google.com/..." }
    """
    try:
        auth_url = get_oauth_url()
        return {"auth_url": auth_url}
    except Exception as e:
        logger.error(f"Failed to generate OAuth URL: {e}")
        raise HTTPException(status_code=500, detail="Failed to initiate login")


@router.get("/callback")
async def oauth_callback(
    code: str = None,
    error: str = None,
    sessions: SessionService = Depends(get_session_service),
):
    """
    Handle Google OAuth callback.

    On success the session cookie is set and the user lands on /dashboard.
    On error the user is sent back to /login with an error flag.
    """
    if error:
        logger.warning(f"OAuth error: {error}")
        return RedirectResponse(url=f"{settings.frontend_url}/login?error=oauth_denied")

    if not code:
        logger.warning("OAuth callback missing code")
        return RedirectResponse(url=f"{settings.frontend_url}/login?error=missing_code")

    try:
        credentials = await exchange_code_for_tokens(code)
        session_id = await sessions.create(credentials)
    except AppError as e:
        logger.error(f"OAuth callback failed: {e.message}")
        return RedirectResponse(
            url=f"{settings.frontend_url}/login?error=auth_failed&detail={quote(e.message)}"
        )

    response = RedirectResponse(url=f"{settings.frontend_url}/dashboard", status_code=302)
    response.set_cookie(
        key="session",
        value=issue_session_token(session_id),
        httponly=True,
        secure=_cookie_is_secure(),
        samesite="lax",
        max_age=settings.session_expire_hours * 3600,
        path="/",
    )

    logger.info(f"OAuth callback successful, session {short_id(session_id)} created")
    return response


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    sessions: SessionService = Depends(get_session_service),
):
    """
    Logout user: delete the server-side session (with its chat history,
    pending confirmations and throttle entries) and clear the cookie.

    Returns:
        { success: true, message: "Logged out successfully" }
    """
    session_id = session_id_from_request(request)
    if session_id:
        await sessions.logout(session_id)

    response.delete_cookie(key="session", path="/", secure=_cookie_is_secure(), samesite="lax")
    return {"success": True, "message": "Logged out successfully"}


@router.get("/session")
async def session_status(
    request: Request,
    sessions: SessionService = Depends(get_session_service),
):
    """
    Check the current session, refreshing its access token if it is about
    to expire.

    Returns:
        { valid: bool, message: str, createdAt?: str }
    """
    session_id = session_id_from_request(request)
    if not session_id:
        return {"valid": False, "message": "No valid session found"}

    result = await sessions.validate(session_id)
    body = {"valid": result.valid, "message": result.message}
    if result.created_at:
        body["createdAt"] = result.created_at.isoformat()
    return body
