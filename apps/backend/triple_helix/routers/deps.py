from __future__ import annotations

from fastapi import HTTPException, Request, status

from ..cycler import TubeCycler


def get_cycler(request: Request) -> TubeCycler:
    """FastAPI dependency returning the scheduler built at startup.

    起動に失敗した、またはまだ起動処理中の場合は 503 を返す。
    """

    cycler = getattr(request.app.state, "scheduler", None)
    if cycler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="scheduler is not initialised",
        )
    return cycler
