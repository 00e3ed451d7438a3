"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from app.api.v1.downloads import router as downloads_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(downloads_router, tags=["download"])
