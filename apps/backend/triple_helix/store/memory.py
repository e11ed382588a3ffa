from __future__ import annotations

import threading

from ..models import PendingMutation, TubePointer


class InMemoryProgressStore:
    """Process-local progress backend for development and tests.

    プロセス終了で内容は失われる。SQLite/Firestore と同じ呼び出し面を持つ。
    """

    def __init__(self, learner_id: str = "anonymous") -> None:
        self.learner_id = learner_id
        self._lock = threading.Lock()
        self._progress: dict[tuple[str, str], PendingMutation] = {}
        self._pointer: TubePointer | None = None

    def upsert_stitch_progress(self, mutation: PendingMutation) -> bool:
        with self._lock:
            self._progress[mutation.key] = mutation
        return True

    def save_tube_pointer(self, pointer: TubePointer) -> bool:
        with self._lock:
            self._pointer = pointer
        return True

    def load_tube_pointer(self) -> TubePointer | None:
        with self._lock:
            return self._pointer

    def load_stitch_progress(self) -> list[PendingMutation]:
        with self._lock:
            return [self._progress[key] for key in sorted(self._progress)]
