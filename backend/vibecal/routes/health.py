"""
Health check endpoints.
"""
from datetime import datetime, timezone
from fastapi import APIRouter, Depends

from vibecal.config import get_settings
from vibecal.dependencies import get_model_roster
from vibecal.services.ai_service import ModelRoster

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
    }


@router.get("/health/ai")
async def ai_health(roster: ModelRoster = Depends(get_model_roster)):
    """Configured completion provider and the model roster."""
    settings = get_settings()
    api_key = settings.openai_api_key if settings.completion_provider == "openai" else settings.gemini_api_key
    return {
        "provider": settings.completion_provider,
        "configured": bool(api_key),
        "primaryModel": roster.primary,
        "models": roster.describe(),
    }
