"""Batched, retrying delivery of stitch progress to the backend of record.

同期レイヤはスケジューラのメモリ上の状態を、バックエンドへ遅れて届ける。

- 同じ (thread_id, stitch_id) への変更は送信前に最新値へ集約する。
- 即時同期（~100ms 後、最短 1 秒間隔）と定期同期（既定 10 秒）の2系統。
- キーごとに独立して送信し、失敗したキーだけが次回へ残る。リトライ回数の
  上限は設けない。
- 送信成功で削除するのは「送ったものと同じ版」のときだけ。送信中に新しい
  値が積まれた場合はそのまま残し、古い値で新しい状態を上書きしない。
- 1回の flush が待つのは送信タイムアウト1回分まで。締切を過ぎても動いている
  送信は in-flight として覚えておき、それが終わるまで同じキーを再送しない
  （遅れて届いた古い値が新しい値を上書きしないように）。
"""

from __future__ import annotations

import itertools
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .logging import logger
from .metrics import MetricsRegistry, registry
from .models import PendingMutation, Stitch, TubePointer


StitchKey = tuple[str, str]

_POINTER_SLOT = "tube_pointer"


class SyncTiming(str, Enum):
    immediate = "immediate"
    scheduled = "scheduled"


class ProgressBackend(Protocol):
    """Backend of record for learner progress.

    Each call reports success for exactly the record it was given.
    """

    def upsert_stitch_progress(self, mutation: PendingMutation) -> bool: ...

    def save_tube_pointer(self, pointer: TubePointer) -> bool: ...

    def load_tube_pointer(self) -> TubePointer | None: ...

    def load_stitch_progress(self) -> list[PendingMutation]: ...


@dataclass(frozen=True)
class _Entry:
    mutation: PendingMutation
    version: int


@dataclass(frozen=True)
class _PointerEntry:
    pointer: TubePointer
    version: int


@dataclass
class SyncReport:
    delivered: list[StitchKey] = field(default_factory=list)
    failed: list[StitchKey] = field(default_factory=list)
    timed_out: list[StitchKey] = field(default_factory=list)
    # 前回の送信がまだ終わっていないため今回は送らなかったキー
    in_flight: list[StitchKey] = field(default_factory=list)
    pointer_delivered: bool | None = None

    @property
    def ok(self) -> bool:
        return not self.failed and not self.in_flight and self.pointer_delivered is not False

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failed)


class StitchSyncQueue:
    """Coalescing pending-mutation set with a background flush worker.

    Mutations are applied to the in-memory model first; this queue only
    decides when their latest values reach the backend. ``enqueue`` never
    blocks on I/O.
    """

    def __init__(
        self,
        backend: ProgressBackend,
        *,
        interval_seconds: float = 10.0,
        immediate_delay_seconds: float = 0.1,
        immediate_min_interval_seconds: float = 1.0,
        delivery_timeout_seconds: float = 5.0,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._backend = backend
        self._interval = interval_seconds
        self._immediate_delay = immediate_delay_seconds
        self._immediate_min_interval = immediate_min_interval_seconds
        self._delivery_timeout = delivery_timeout_seconds
        self._clock = clock
        self._metrics = metrics or registry

        # pending / pointer / 予定時刻はすべてこの Condition で保護する
        self._cond = threading.Condition()
        self._pending: dict[StitchKey, _Entry] = {}
        self._pending_pointer: _PointerEntry | None = None
        self._versions = itertools.count(1)
        self._next_scheduled_at = clock() + interval_seconds
        self._immediate_due_at: float | None = None
        self._last_immediate_at: float | None = None
        # 締切後も走り続けている送信。終わるまで同じキーは再送しない
        self._in_flight: dict[StitchKey | str, Future] = {}

        # flush は同時に1つだけ
        self._flush_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="stitch-sync"
        )
        self._worker: threading.Thread | None = None
        self._stopping = False
        self._closed = False

    # --- enqueue side ---
    def enqueue(self, mutation: PendingMutation, timing: SyncTiming = SyncTiming.scheduled) -> None:
        with self._cond:
            self._pending[mutation.key] = _Entry(mutation, next(self._versions))
            if timing is SyncTiming.immediate:
                self._request_immediate_locked()

    def enqueue_stitches(
        self, stitches: Iterable[Stitch], timing: SyncTiming = SyncTiming.scheduled
    ) -> None:
        with self._cond:
            for stitch in stitches:
                mutation = PendingMutation.from_stitch(stitch)
                self._pending[mutation.key] = _Entry(mutation, next(self._versions))
            if timing is SyncTiming.immediate:
                self._request_immediate_locked()

    def enqueue_pointer(self, pointer: TubePointer, timing: SyncTiming = SyncTiming.scheduled) -> None:
        with self._cond:
            self._pending_pointer = _PointerEntry(pointer, next(self._versions))
            if timing is SyncTiming.immediate:
                self._request_immediate_locked()

    def _request_immediate_locked(self) -> None:
        """Arrange an immediate flush, honouring the rate limit.

        既に即時同期が予約済みならそれに相乗りする。直近の即時同期から最小間隔が
        経っていなければ、許される最も早い時刻まで後ろ倒しにする。
        """

        if self._immediate_due_at is not None:
            return
        due = self._clock() + self._immediate_delay
        if self._last_immediate_at is not None:
            due = max(due, self._last_immediate_at + self._immediate_min_interval)
        self._immediate_due_at = due
        self._cond.notify_all()

    # --- inspection ---
    def pending(self) -> dict[StitchKey, PendingMutation]:
        with self._cond:
            return {key: entry.mutation for key, entry in self._pending.items()}

    def pending_pointer(self) -> TubePointer | None:
        with self._cond:
            return self._pending_pointer.pointer if self._pending_pointer else None

    def in_flight(self) -> list[StitchKey]:
        """Keys whose timed-out delivery is still running in the pool."""

        with self._cond:
            return sorted(
                key
                for key in list(self._in_flight)
                if key != _POINTER_SLOT and self._still_running_locked(key)
            )

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending)

    @property
    def immediate_due_at(self) -> float | None:
        with self._cond:
            return self._immediate_due_at

    @property
    def next_scheduled_at(self) -> float:
        with self._cond:
            return self._next_scheduled_at

    # --- delivery ---
    def _deliver(self, mutation: PendingMutation) -> bool:
        return bool(self._backend.upsert_stitch_progress(mutation))

    def _deliver_pointer(self, pointer: TubePointer) -> bool:
        return bool(self._backend.save_tube_pointer(pointer))

    def _still_running_locked(self, slot: StitchKey | str) -> bool:
        future = self._in_flight.get(slot)
        if future is None:
            return False
        if future.done():
            del self._in_flight[slot]
            return False
        return True

    def _result(self, future: Future, label: str) -> bool:
        """Result of a finished delivery. A raised exception counts as a failure."""

        try:
            return bool(future.result())
        except Exception as exc:
            logger.warning(
                "stitch_sync_error",
                target=label,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def _settle(self, slot: StitchKey | str, future: Future, label: str) -> tuple[bool, bool]:
        """Outcome of one delivery once the flush deadline has passed.

        Returns ``(succeeded, timed_out)``. 締切までに始まらなかった送信は取り消して
        次回へ回す。走り出していた送信は止められないので in-flight として覚えておく。
        """

        if future.done():
            return self._result(future, label), False
        if future.cancel():
            return False, False
        with self._cond:
            self._in_flight[slot] = future
        logger.warning(
            "stitch_sync_timeout",
            target=label,
            timeout_seconds=self._delivery_timeout,
        )
        return False, True

    def flush(self) -> SyncReport:
        """Deliver every pending key once and keep the ones that failed.

        各キーの削除は、そのキー自身の送信結果にもとづいて判断する。
        待ち時間は flush 全体で ``delivery_timeout_seconds`` まで。
        """

        with self._flush_lock:
            report = SyncReport()
            with self._cond:
                batch: dict[StitchKey, _Entry] = {}
                for key, entry in self._pending.items():
                    if self._still_running_locked(key):
                        report.in_flight.append(key)
                    else:
                        batch[key] = entry
                pointer_entry = self._pending_pointer
                if pointer_entry is not None and self._still_running_locked(_POINTER_SLOT):
                    pointer_entry = None

            if not batch and pointer_entry is None:
                return report

            futures = {
                key: (entry, self._executor.submit(self._deliver, entry.mutation))
                for key, entry in batch.items()
            }
            pointer_future = (
                self._executor.submit(self._deliver_pointer, pointer_entry.pointer)
                if pointer_entry is not None
                else None
            )
            waiting = [future for _entry, future in futures.values()]
            if pointer_future is not None:
                waiting.append(pointer_future)
            wait(waiting, timeout=self._delivery_timeout)

            for key, (entry, future) in futures.items():
                succeeded, timed_out = self._settle(key, future, f"{key[0]}/{key[1]}")
                if timed_out:
                    report.timed_out.append(key)
                if succeeded:
                    report.delivered.append(key)
                    with self._cond:
                        current = self._pending.get(key)
                        if current is not None and current.version == entry.version:
                            del self._pending[key]
                else:
                    report.failed.append(key)
                    logger.warning("stitch_sync_failed", thread_id=key[0], stitch_id=key[1])

            if pointer_future is not None and pointer_entry is not None:
                succeeded, _timed_out = self._settle(_POINTER_SLOT, pointer_future, _POINTER_SLOT)
                report.pointer_delivered = succeeded
                if succeeded:
                    with self._cond:
                        current_pointer = self._pending_pointer
                        if current_pointer is not None and current_pointer.version == pointer_entry.version:
                            self._pending_pointer = None

            self._metrics.record_sync(
                delivered=len(report.delivered),
                failed=len(report.failed),
                timeouts=len(report.timed_out),
            )
            logger.info(
                "stitch_sync_complete",
                delivered=len(report.delivered),
                failed=len(report.failed),
                timed_out=len(report.timed_out),
                in_flight=len(report.in_flight),
                pointer_delivered=report.pointer_delivered,
                remaining=len(self),
            )
            return report

    def force_sync(self) -> SyncReport:
        return self.flush()

    # --- scheduling ---
    def _seconds_until_due_locked(self, now: float) -> float:
        wait = self._next_scheduled_at - now
        if self._immediate_due_at is not None:
            wait = min(wait, self._immediate_due_at - now)
        return wait

    def run_due(self, now: float | None = None) -> SyncReport | None:
        """Flush if an immediate or scheduled delivery is due at ``now``."""

        current = self._clock() if now is None else now
        with self._cond:
            immediate = self._immediate_due_at is not None and current >= self._immediate_due_at
            scheduled = current >= self._next_scheduled_at
            if not (immediate or scheduled):
                return None
            if immediate:
                self._immediate_due_at = None
                self._last_immediate_at = current
            if scheduled:
                self._next_scheduled_at = current + self._interval
        return self.flush()

    def _run(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
                wait = self._seconds_until_due_locked(self._clock())
                if wait > 0:
                    self._cond.wait(timeout=wait)
                    continue
            try:
                self.run_due()
            except Exception:
                # ワーカーを止めると以後の同期が全て止まるため、記録して続行する
                logger.exception("stitch_sync_worker_error")

    @property
    def running(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    def start(self) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError("sync queue has been stopped and cannot be restarted")
            if self.running:
                return
            self._stopping = False
            self._worker = threading.Thread(
                target=self._run, name="stitch-sync-worker", daemon=True
            )
            self._worker.start()
        logger.info("stitch_sync_started", interval_seconds=self._interval)

    def stop(self, *, final_flush: bool = True, timeout: float | None = 5.0) -> SyncReport | None:
        """Stop the worker and make one last delivery attempt."""

        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            worker = self._worker
        if worker is not None:
            worker.join(timeout)
        self._worker = None
        report = self.flush() if final_flush else None
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info(
            "stitch_sync_stopped",
            final_flush=final_flush,
            remaining=len(self),
        )
        return report
