"""Tube cycle controller: the single public surface of the scheduler.

アクティブなチューブ番号とサイクル数はこのインスタンスが持つ。グローバルな
状態には置かない。キュー（TubeModel）を変更できるのはここだけで、同期は
StitchSyncQueue に積むだけで待たない。
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Any

from .integrity import TubeIntegrity, verify_all_tubes
from .logging import logger
from .models import TUBE_NUMBERS, CompletionEvent, Stitch, TubePointer
from .reordering import ReorderOutcome, apply_completion
from .sync import StitchSyncQueue, SyncTiming
from .tubes import TubeModel


@dataclass
class SessionStats:
    completions: int = 0
    masteries: int = 0
    total_points: int = 0
    degraded_tubes: int = 0


@dataclass
class CompletionResult:
    """Structured outcome of ``complete_ready_stitch``.

    ``degraded`` は完了時点でアクティブチューブにレディが無かったことを表す。
    その場合も ``advance()`` は実行済みで、``stitch`` と ``outcome`` は None。
    """

    tube_number: int
    stitch: Stitch | None
    mastered: bool
    degraded: bool
    next_tube: int
    next_ready: Stitch | None
    cycle_count: int
    outcome: ReorderOutcome | None = None


class TubeCycler:
    def __init__(
        self,
        model: TubeModel,
        sync: StitchSyncQueue,
        *,
        active_tube: int = TUBE_NUMBERS[0],
        cycle_count: int = 0,
    ) -> None:
        if active_tube not in TUBE_NUMBERS:
            raise ValueError(f"active_tube must be one of {TUBE_NUMBERS} (got {active_tube})")
        self._model = model
        self._sync = sync
        self._active_tube = active_tube
        self._cycle_count = cycle_count
        self._stats = SessionStats()
        # HTTP のワーカースレッドから呼ばれるため、モデル操作はすべてこのロックで直列化する
        self._lock = threading.RLock()

    @property
    def model(self) -> TubeModel:
        return self._model

    @property
    def sync(self) -> StitchSyncQueue:
        return self._sync

    @property
    def active_tube(self) -> int:
        with self._lock:
            return self._active_tube

    @property
    def stats(self) -> SessionStats:
        with self._lock:
            return replace(self._stats)

    def get_cycle_count(self) -> int:
        with self._lock:
            return self._cycle_count

    def get_ready_stitch(self, tube_number: int | None = None) -> Stitch | None:
        """Ready stitch of ``tube_number`` (the active tube when omitted)."""

        with self._lock:
            tube = self._active_tube if tube_number is None else tube_number
            return self._model.get_ready_stitch(tube)

    def get_upcoming_stitches(self, tube_number: int, count: int = 5) -> list[Stitch]:
        with self._lock:
            return self._model.upcoming(tube_number, count)

    def get_stitches_to_preload(self, count: int = 5) -> dict[int, list[Stitch]]:
        """First ``count`` stitches of every tube, ready stitch first."""

        with self._lock:
            return {
                tube: self._model.ranked_view(tube)[: max(count, 0)]
                for tube in TUBE_NUMBERS
            }

    # --- tube pointer ---
    def _pointer_locked(self) -> TubePointer:
        ready = self._model.get_ready_stitch(self._active_tube)
        if ready is not None:
            thread_id: str | None = ready.thread_id
        else:
            threads = self._model.threads_in_tube(self._active_tube)
            thread_id = threads[0].thread_id if threads else None
        return TubePointer(
            active_tube=self._active_tube,
            thread_id=thread_id,
            cycle_count=self._cycle_count,
        )

    def _record_pointer_locked(self) -> None:
        self._sync.enqueue_pointer(self._pointer_locked())

    def pointer(self) -> TubePointer:
        with self._lock:
            return self._pointer_locked()

    # --- transitions ---
    def _advance_locked(self) -> int:
        previous = self._active_tube
        self._active_tube = (previous % len(TUBE_NUMBERS)) + 1
        if self._active_tube == TUBE_NUMBERS[0]:
            self._cycle_count += 1
        self._record_pointer_locked()
        logger.debug(
            "tube_advanced",
            from_tube=previous,
            to_tube=self._active_tube,
            cycle_count=self._cycle_count,
        )
        return self._active_tube

    def advance(self) -> int:
        """Move to the next tube (1 → 2 → 3 → 1) and return it."""

        with self._lock:
            return self._advance_locked()

    def select_tube(self, tube_number: int) -> bool:
        """Jump to a tube without counting a cycle. Unknown tubes return False."""

        with self._lock:
            if tube_number not in TUBE_NUMBERS:
                logger.info("tube_select_rejected", tube_number=tube_number)
                return False
            self._active_tube = tube_number
            self._record_pointer_locked()
            logger.info("tube_selected", tube_number=tube_number)
            return True

    def complete_ready_stitch(self, score: int, max_score: int) -> CompletionResult:
        """Apply a completion to the active tube's ready stitch, then advance.

        レディが無いチューブ（劣化状態）では何も変更せず、それでも次の
        チューブへ進める。1本の壊れたチューブでサイクル全体が止まらないようにする。
        """

        with self._lock:
            tube = self._active_tube
            ready = self._model.get_ready_stitch(tube)
            if ready is None:
                self._stats.degraded_tubes += 1
                logger.warning("tube_degraded", tube_number=tube)
                next_tube = self._advance_locked()
                return CompletionResult(
                    tube_number=tube,
                    stitch=None,
                    mastered=False,
                    degraded=True,
                    next_tube=next_tube,
                    next_ready=self._model.get_ready_stitch(next_tube),
                    cycle_count=self._cycle_count,
                )

            event = CompletionEvent(
                thread_id=ready.thread_id,
                stitch_id=ready.id,
                score=score,
                max_score=max_score,
            )
            outcome = apply_completion(self._model, event)
            if outcome is not None:
                self._stats.completions += 1
                self._stats.total_points += event.score
                if outcome.mastered:
                    self._stats.masteries += 1
                # 位置が動く習得は即時同期、skip のリセットだけなら定期同期で足りる
                timing = SyncTiming.immediate if outcome.mastered else SyncTiming.scheduled
                self._sync.enqueue_stitches(outcome.touched, timing)

            next_tube = self._advance_locked()
            return CompletionResult(
                tube_number=tube,
                stitch=ready,
                mastered=event.mastered,
                degraded=False,
                next_tube=next_tube,
                next_ready=self._model.get_ready_stitch(next_tube),
                cycle_count=self._cycle_count,
                outcome=outcome,
            )

    def check_integrity(self) -> dict[int, TubeIntegrity]:
        """Report every tube's ready-stitch state without changing positions."""

        with self._lock:
            return verify_all_tubes(self._model, repair=False)

    def verify_integrity(self) -> dict[int, TubeIntegrity]:
        """Check and repair every tube; repaired stitches are synced immediately."""

        with self._lock:
            reports = verify_all_tubes(self._model)
            repaired: list[Stitch] = []
            for report in reports.values():
                for repair in report.repairs:
                    stitch = self._model.get_stitch(repair.thread_id, repair.stitch_id)
                    if stitch is not None:
                        repaired.append(stitch)
            if repaired:
                self._sync.enqueue_stitches(repaired, SyncTiming.immediate)
            return reports

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "active_tube": self._active_tube,
                "cycle_count": self._cycle_count,
                "ready": {tube: self._model.get_ready_stitch(tube) for tube in TUBE_NUMBERS},
                "stats": replace(self._stats),
            }
