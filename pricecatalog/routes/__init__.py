"""API routes."""

from fastapi import APIRouter

from pricecatalog.routes import admin

api_router = APIRouter()

# Admin endpoints (jobs, registry, remediation)
api_router.include_router(admin.router, prefix="/v1/admin", tags=["admin"])
