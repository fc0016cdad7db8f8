"""API dependencies."""

from fastapi import HTTPException, Request

from flageval.core.feature_flags.service import FeatureFlagsService


async def get_flag_service(request: Request) -> FeatureFlagsService:
    service = getattr(request.app.state, "flag_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Feature flag service not configured")
    return service
