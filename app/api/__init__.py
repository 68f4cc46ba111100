"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import assistant

router = APIRouter()

# Planner/executor assistant routes
router.include_router(assistant.router, tags=["assistant"])
