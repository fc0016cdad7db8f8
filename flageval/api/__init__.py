"""API router aggregation."""

from fastapi import APIRouter

from flageval.api.v1 import flags

api_router = APIRouter()
api_router.include_router(flags.router, prefix="/v1/flags", tags=["feature-flags"])

__all__ = ["api_router"]
