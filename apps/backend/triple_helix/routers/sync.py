from __future__ import annotations

from fastapi import APIRouter, Depends

from ..cycler import TubeCycler
from ..models.api import (
    PendingMutationView,
    SyncFlushResponse,
    SyncKey,
    SyncPendingResponse,
)
from .deps import get_cycler


router = APIRouter(prefix="/api/sync", tags=["sync"])


def _keys(keys: list[tuple[str, str]]) -> list[SyncKey]:
    return [SyncKey(thread_id=thread_id, stitch_id=stitch_id) for thread_id, stitch_id in keys]


@router.post("/flush", response_model=SyncFlushResponse)
def flush(cycler: TubeCycler = Depends(get_cycler)) -> SyncFlushResponse:
    """Deliver pending progress now instead of waiting for the next tick.

    失敗したキーは保持されたままで、レスポンスの ``failed`` に列挙される。
    """

    report = cycler.sync.force_sync()
    return SyncFlushResponse(
        ok=report.ok,
        delivered=_keys(report.delivered),
        failed=_keys(report.failed),
        timed_out=_keys(report.timed_out),
        in_flight=_keys(report.in_flight),
        pointer_delivered=report.pointer_delivered,
        remaining=len(cycler.sync),
    )


@router.get("/pending", response_model=SyncPendingResponse)
def pending(cycler: TubeCycler = Depends(get_cycler)) -> SyncPendingResponse:
    items = cycler.sync.pending()
    return SyncPendingResponse(
        count=len(items),
        pending=[
            PendingMutationView(
                thread_id=m.thread_id,
                stitch_id=m.stitch_id,
                position=m.position,
                skip_distance=m.skip_distance,
                difficulty_tier=m.difficulty_tier,
            )
            for _, m in sorted(items.items())
        ],
        pointer_pending=cycler.sync.pending_pointer() is not None,
        in_flight=_keys(cycler.sync.in_flight()),
    )
