"""On-demand sync and repricing runs."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

router = APIRouter()


def _scheduler(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    return scheduler


@router.post("/sync")
async def trigger_sync(request: Request) -> dict[str, Any]:
    return {"results": await _scheduler(request).trigger_sync()}


@router.post("/reprice")
async def trigger_reprice(request: Request) -> dict[str, Any]:
    return {"result": await _scheduler(request).trigger_reprice()}
