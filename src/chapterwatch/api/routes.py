"""Administrative routes for the chapter update checker."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from chapterwatch.errors import (
    ChapterWatchError,
    CycleInProgress,
    OriginBlocked,
    SourceNotFound,
)
from chapterwatch.models import CycleStatus, SourceCheckResult
from chapterwatch.services.updater import ChapterUpdater

logger = logging.getLogger(__name__)

router = APIRouter()


class TriggerResponse(BaseModel):
    accepted: bool
    message: str


class ForceStaleResponse(BaseModel):
    reset: int
    accepted: bool


def get_updater(request: Request) -> ChapterUpdater:
    updater = getattr(request.app.state, "updater", None)
    if updater is None:
        raise HTTPException(status_code=503, detail="The update checker is not running.")
    return updater


@router.get("/status", response_model=CycleStatus)
async def read_status(updater: ChapterUpdater = Depends(get_updater)) -> CycleStatus:
    """Return the most recent cycle state and the recent error log."""

    return updater.get_status()


@router.post("/cycle", response_model=TriggerResponse, status_code=202)
async def trigger_cycle(updater: ChapterUpdater = Depends(get_updater)) -> TriggerResponse:
    """Start an update cycle in the background unless one is already running."""

    if updater.trigger_cycle():
        return TriggerResponse(accepted=True, message="Update cycle started.")
    return TriggerResponse(accepted=False, message="An update cycle is already running.")


@router.post("/sources/stale", response_model=ForceStaleResponse, status_code=202)
async def force_stale_all(updater: ChapterUpdater = Depends(get_updater)) -> ForceStaleResponse:
    """Mark every source stale and schedule a cycle."""

    try:
        reset, accepted = updater.force_stale_all()
    except ChapterWatchError as exc:
        logger.exception("Failed to reset check times")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return ForceStaleResponse(reset=reset, accepted=accepted)


@router.post("/sources/{source_id}/check", response_model=SourceCheckResult)
async def check_source(
    source_id: str, updater: ChapterUpdater = Depends(get_updater)
) -> SourceCheckResult:
    """Check a single source now, regardless of when it was last checked."""

    try:
        return await updater.check_source(source_id)
    except SourceNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CycleInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except OriginBlocked as exc:
        raise HTTPException(
            status_code=503,
            detail=str(exc),
            headers={"Retry-After": str(int(exc.retry_after) + 1)},
        ) from exc
    except ChapterWatchError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
