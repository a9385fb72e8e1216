from fastapi import APIRouter

from cadence.api.jobs import router as jobs_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(jobs_router, prefix="/api", tags=["jobs"])
