"""API router for the flow engine service."""
from fastapi import APIRouter
from .executions.router import router as executions_router

router = APIRouter(prefix="/api")
router.include_router(executions_router)
