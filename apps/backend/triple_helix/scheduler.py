"""Scheduler bootstrap: catalogue + persisted progress + backend → TubeCycler.

起動手順:
1. 同じチューブを共有するスレッドの位置を連結する
2. バックエンドに保存済みの進捗をカタログへ重ねる
3. 保存済みのチューブポインタから初期チューブとサイクル数を決める（無ければ 1 / 0）
4. 全チューブの整合性を検査し、修復した分は即時同期に積む
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from .catalog import CatalogError, apply_progress, layout_tube_positions, load_catalog_file
from .config import Settings, settings
from .cycler import TubeCycler
from .logging import logger
from .metrics import MetricsRegistry
from .models import TUBE_NUMBERS, Thread, TubePointer
from .store import create_progress_backend
from .sync import ProgressBackend, StitchSyncQueue
from .tubes import TubeModel


def _load_pointer(backend: ProgressBackend) -> TubePointer | None:
    try:
        return backend.load_tube_pointer()
    except Exception as exc:
        # ポインタが無いのはエラーではない。読めない場合も既定値で起動する
        logger.warning(
            "tube_pointer_load_failed",
            error=str(exc),
            error_class=exc.__class__.__name__,
        )
        return None


def build_sync_queue(
    backend: ProgressBackend,
    cfg: Settings | None = None,
    *,
    clock: Callable[[], float] | None = None,
    metrics: MetricsRegistry | None = None,
) -> StitchSyncQueue:
    cfg = cfg or settings
    kwargs = {} if clock is None else {"clock": clock}
    return StitchSyncQueue(
        backend,
        interval_seconds=cfg.sync_interval_seconds,
        immediate_delay_seconds=cfg.sync_immediate_delay_ms / 1000,
        immediate_min_interval_seconds=cfg.sync_immediate_min_interval_ms / 1000,
        delivery_timeout_seconds=cfg.sync_delivery_timeout_ms / 1000,
        max_workers=cfg.sync_max_workers,
        metrics=metrics,
        **kwargs,
    )


def build_scheduler(
    threads: Iterable[Thread],
    backend: ProgressBackend,
    cfg: Settings | None = None,
    *,
    clock: Callable[[], float] | None = None,
    metrics: MetricsRegistry | None = None,
) -> TubeCycler:
    """Assemble a ready-to-use cycler. The sync worker is not started here."""

    cfg = cfg or settings
    try:
        model = TubeModel(layout_tube_positions(threads))
    except ValueError as exc:
        raise CatalogError(str(exc)) from exc

    applied = apply_progress(model, backend.load_stitch_progress())

    pointer = _load_pointer(backend)
    active_tube = pointer.active_tube if pointer is not None else TUBE_NUMBERS[0]
    cycle_count = pointer.cycle_count if pointer is not None else 0

    sync = build_sync_queue(backend, cfg, clock=clock, metrics=metrics)
    cycler = TubeCycler(model, sync, active_tube=active_tube, cycle_count=cycle_count)
    reports = cycler.verify_integrity()

    logger.info(
        "scheduler_ready",
        stitch_count=len(model),
        thread_count=len(model.thread_ids()),
        progress_applied=applied,
        active_tube=active_tube,
        cycle_count=cycle_count,
        degraded_tubes=[tube for tube, report in reports.items() if report.degraded],
    )
    return cycler


def build_scheduler_from_settings(cfg: Settings | None = None) -> TubeCycler:
    """Build the scheduler from ``CATALOG_PATH`` and ``PROGRESS_BACKEND``.

    なぜ: strict モードでカタログが未設定なら起動を止める。空のスケジューラで
    動き出すと全チューブが劣化状態のまま学習者に見えてしまう。
    """

    cfg = cfg or settings
    if cfg.catalog_path:
        threads = load_catalog_file(cfg.catalog_path)
    elif cfg.strict_mode:
        raise CatalogError("CATALOG_PATH is not configured")
    else:
        logger.warning("catalog_not_configured", strict_mode=cfg.strict_mode)
        threads = []
    return build_scheduler(threads, create_progress_backend(cfg), cfg)
