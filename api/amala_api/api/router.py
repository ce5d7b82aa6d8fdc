from fastapi import APIRouter

from amala_api.api.routes import health, locations, moderation

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(locations.router, prefix="/locations", tags=["locations"])
api_router.include_router(moderation.router, prefix="/moderation", tags=["moderation"])
