from fastapi import APIRouter

from app.api.generate import router as generate_router
from app.api.media import router as media_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(generate_router, prefix="/api", tags=["generation"])
api_router.include_router(media_router, prefix="/api", tags=["media"])
