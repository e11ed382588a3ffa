from fastapi import APIRouter
from fastapi.responses import JSONResponse
from ..metrics import registry

router = APIRouter()


@router.get("/healthz")
def health_check() -> dict[str, str]:
    """Simple health check endpoint.

    ライブネス確認用の簡易エンドポイント。スケジューラの状態には依存しない。
    """
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> JSONResponse:
    """Return in-memory metrics snapshot.

    パス別の p95/エラー/件数と、進捗同期の配信・失敗・タイムアウト件数を返す。
    """
    return JSONResponse(content={"paths": registry.snapshot(), "sync": registry.sync_snapshot()})
