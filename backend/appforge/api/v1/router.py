from fastapi import APIRouter
from appforge.api.v1.endpoints import generation

api_router = APIRouter()


@api_router.get("/health", tags=["Health"])
async def health_check():
    """Simple health check endpoint for load balancer"""
    return {"status": "healthy", "service": "appforge-backend"}


api_router.include_router(generation.router, prefix="/projects", tags=["Projects"])
