from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..cycler import TubeCycler
from ..integrity import TubeIntegrity
from ..logging import logger
from ..models import TUBE_NUMBERS
from ..models.api import (
    AdvanceResponse,
    CompletionRequest,
    CompletionResponse,
    IntegrityResponse,
    PositionRepairView,
    SessionStatsView,
    StitchView,
    TubeIntegrityView,
    TubeReadyResponse,
    TubeStateResponse,
    UpcomingResponse,
)
from .deps import get_cycler


router = APIRouter(prefix="/api/tubes", tags=["tubes"])


def _require_tube(tube_number: int) -> int:
    if tube_number not in TUBE_NUMBERS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"tube {tube_number} does not exist",
        )
    return tube_number


def _ready_view(cycler: TubeCycler, tube_number: int) -> TubeReadyResponse:
    ready = cycler.get_ready_stitch(tube_number)
    return TubeReadyResponse(
        tube_number=tube_number,
        ready=StitchView.from_stitch(ready),
        degraded=ready is None,
    )


@router.get("", response_model=TubeStateResponse)
def get_tube_state(cycler: TubeCycler = Depends(get_cycler)) -> TubeStateResponse:
    """Active tube, cycle count and the ready stitch of every tube."""

    stats = cycler.stats
    return TubeStateResponse(
        active_tube=cycler.active_tube,
        cycle_count=cycler.get_cycle_count(),
        tubes=[_ready_view(cycler, tube) for tube in TUBE_NUMBERS],
        stats=SessionStatsView(
            completions=stats.completions,
            masteries=stats.masteries,
            total_points=stats.total_points,
            degraded_tubes=stats.degraded_tubes,
        ),
    )


def _integrity_response(reports: dict[int, TubeIntegrity]) -> IntegrityResponse:
    return IntegrityResponse(
        tubes=[
            TubeIntegrityView(
                tube_number=report.tube_number,
                valid=report.valid,
                ready_count=report.ready_count,
                thread_count=report.thread_count,
                stitch_count=report.stitch_count,
                ready_stitch_id=report.ready.id if report.ready else None,
                ready_thread_id=report.ready.thread_id if report.ready else None,
                repairs=[
                    PositionRepairView(
                        thread_id=r.thread_id,
                        stitch_id=r.stitch_id,
                        old_position=r.old_position,
                        new_position=r.new_position,
                    )
                    for r in report.repairs
                ],
            )
            for report in reports.values()
        ]
    )


@router.get("/integrity", response_model=IntegrityResponse)
def check_integrity(cycler: TubeCycler = Depends(get_cycler)) -> IntegrityResponse:
    """Report the ready-stitch invariant of every tube. Positions are not changed."""

    return _integrity_response(cycler.check_integrity())


@router.post("/integrity", response_model=IntegrityResponse)
def repair_integrity(cycler: TubeCycler = Depends(get_cycler)) -> IntegrityResponse:
    """Check and repair every tube; repaired stitches are queued for immediate sync."""

    return _integrity_response(cycler.verify_integrity())


@router.get("/{tube_number}/ready", response_model=TubeReadyResponse)
def get_ready_stitch(
    tube_number: int, cycler: TubeCycler = Depends(get_cycler)
) -> TubeReadyResponse:
    """Ready stitch of one tube. ``ready`` is null when the tube is degraded."""

    return _ready_view(cycler, _require_tube(tube_number))


@router.get("/{tube_number}/upcoming", response_model=UpcomingResponse)
def get_upcoming(
    tube_number: int,
    count: int = Query(default=5, ge=0, le=100),
    cycler: TubeCycler = Depends(get_cycler),
) -> UpcomingResponse:
    tube = _require_tube(tube_number)
    stitches = cycler.get_upcoming_stitches(tube, count)
    return UpcomingResponse(
        tube_number=tube,
        stitches=[StitchView.from_stitch(s) for s in stitches],
    )


@router.post("/complete", response_model=CompletionResponse)
def complete_ready_stitch(
    req: CompletionRequest, cycler: TubeCycler = Depends(get_cycler)
) -> CompletionResponse:
    """Score the active tube's ready stitch and move to the next tube.

    劣化チューブでも 200 を返し、``degraded=true`` で呼び出し側に知らせる。
    """

    result = cycler.complete_ready_stitch(req.score, req.max_score)
    if result.degraded:
        logger.info("completion_skipped_degraded_tube", tube_number=result.tube_number)
    return CompletionResponse(
        tube_number=result.tube_number,
        stitch=StitchView.from_stitch(result.stitch),
        mastered=result.mastered,
        degraded=result.degraded,
        target_position=result.outcome.target_position if result.outcome else None,
        next_tube=result.next_tube,
        next_ready=StitchView.from_stitch(result.next_ready),
        cycle_count=result.cycle_count,
    )


@router.post("/advance", response_model=AdvanceResponse)
def advance(cycler: TubeCycler = Depends(get_cycler)) -> AdvanceResponse:
    active = cycler.advance()
    return AdvanceResponse(
        active_tube=active,
        cycle_count=cycler.get_cycle_count(),
        ready=StitchView.from_stitch(cycler.get_ready_stitch(active)),
    )


@router.post("/{tube_number}/select", response_model=AdvanceResponse)
def select_tube(
    tube_number: int, cycler: TubeCycler = Depends(get_cycler)
) -> AdvanceResponse:
    if not cycler.select_tube(tube_number):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"tube {tube_number} does not exist",
        )
    return AdvanceResponse(
        active_tube=tube_number,
        cycle_count=cycler.get_cycle_count(),
        ready=StitchView.from_stitch(cycler.get_ready_stitch(tube_number)),
    )
