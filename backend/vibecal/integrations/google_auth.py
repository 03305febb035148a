"""
Google OAuth client integration.

This module handles:
1. Generating OAuth authorization URLs
2. Exchanging authorization codes for tokens
3. Refreshing expired access tokens
"""
import httpx
from datetime import timedelta
from typing import Tuple
from urllib.parse import urlencode

from vibecal.config import get_settings
from vibecal.models.session import Credentials, utc_now
from vibecal.utils.logger import get_logger
from vibecal.utils.errors import AuthError, PermissionRevokedError, RefreshFailedError

logger = get_logger(__name__)
settings = get_settings()

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

TOKEN_TIMEOUT = 15.0


def get_oauth_url() -> str:
    """
    Generate Google OAuth authorization URL.

    The user will be redirected to this URL to grant calendar access.
    After granting, Google redirects back to our callback with a code.

    Returns:
        OAuth authorization URL string
    """
    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": settings.google_redirect_uri,
        "response_type": "code",
        "scope": " ".join(settings.google_scopes),
        "access_type": "offline",  # Request refresh token
        "prompt": "consent",  # Force consent to get refresh token
        "include_granted_scopes": "true",
    }

    url = f"{GOOGLE_AUTH_URL}?{urlencode(params)}"
    logger.info("Generated OAuth URL")
    return url


async def exchange_code_for_tokens(code: str) -> Credentials:
    """
    Exchange authorization code for access and refresh tokens.

    Args:
        code: Authorization code from Google callback

    Returns:
        Credential bundle with absolute expiry

    Raises:
        AuthError: If token exchange fails
    """
    data = {
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": settings.google_redirect_uri,
    }

    async with httpx.AsyncClient(timeout=TOKEN_TIMEOUT) as client:
        try:
            response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.RequestError as e:
            logger.error(f"Token exchange request failed: {e}")
            raise AuthError("Failed to connect to Google for authentication")

    if response.status_code != 200:
        error_data = _error_body(response)
        logger.error(f"Token exchange failed: {error_data}")
        raise AuthError(f"Failed to exchange code: {error_data.get('error_description', 'Unknown error')}")

    try:
        tokens = response.json()
        credentials = Credentials(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),  # May not be present on re-auth
            expiry=utc_now() + timedelta(seconds=int(tokens.get("expires_in", 3600))),
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        logger.error(f"Token exchange returned an unusable body: {e!r}")
        raise AuthError("Google returned an invalid token response")

    logger.info(f"Exchanged code for tokens (refresh token: {'present' if credentials.refresh_token else 'none'})")
    return credentials


async def refresh_access_token(refresh_token: str) -> Tuple[str, int]:
    """
    Refresh an expired access token using the refresh token.

    Args:
        refresh_token: The refresh token from initial auth

    Returns:
        Tuple of (new_access_token, expires_in_seconds)

    Raises:
        PermissionRevokedError: If refresh token is invalid/revoked
        RefreshFailedError: For other refresh failures
    """
    data = {
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }

    async with httpx.AsyncClient(timeout=TOKEN_TIMEOUT) as client:
        try:
            response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.RequestError as e:
            logger.error(f"Token refresh request failed: {e}")
            raise RefreshFailedError("Failed to connect to Google for token refresh")

    if response.status_code != 200:
        error_data = _error_body(response)

        # Check for revoked permissions
        if error_data.get("error") == "invalid_grant":
            logger.warning("Refresh token revoked or expired")
            raise PermissionRevokedError()

        logger.error(f"Token refresh failed: {error_data}")
        raise RefreshFailedError()

    try:
        tokens = response.json()
        access_token = tokens["access_token"]
        expires_in = int(tokens.get("expires_in", 3600))
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        logger.error(f"Token refresh returned an unusable body: {e!r}")
        raise RefreshFailedError("Google returned an invalid token response")

    logger.info("Successfully refreshed access token")
    return access_token, expires_in


def _error_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {"error": f"HTTP {response.status_code}"}
    return body if isinstance(body, dict) else {"error": str(body)}
