"""API router aggregator."""

from fastapi import APIRouter

from . import actions, dashboard, listings

api_router = APIRouter()
api_router.include_router(dashboard.router, tags=["dashboard"])
api_router.include_router(listings.router, tags=["listings"], prefix="/listings")
api_router.include_router(actions.router, tags=["actions"], prefix="/actions")
