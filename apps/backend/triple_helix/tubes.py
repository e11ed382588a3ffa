from __future__ import annotations

from collections.abc import Iterable

from .models import READY_POSITION, TUBE_NUMBERS, DifficultyTier, Stitch, Thread


class TubeModel:
    """In-memory queue model: threads, their stitches, and the per-tube views.

    A tube stores nothing of its own. Its contents are the stitches of every
    thread assigned to it, merged in thread-id order and then by position.
    All position/skip/tier changes go through the ``set_*`` primitives so the
    controller can see every mutation.

    スレッド/チューブが見つからない場合は例外を投げず None / False を返す。
    呼び出し側は「レディなスティッチなし」として扱う。
    """

    def __init__(self, threads: Iterable[Thread]) -> None:
        self._threads: dict[str, Thread] = {}
        self._index: dict[tuple[str, str], Stitch] = {}
        for thread in threads:
            if thread.thread_id in self._threads:
                raise ValueError(f"duplicate thread_id: {thread.thread_id}")
            self._threads[thread.thread_id] = thread
            for stitch in thread.stitches:
                key = (thread.thread_id, stitch.id)
                if key in self._index:
                    raise ValueError(
                        f"duplicate stitch_id {stitch.id} in thread {thread.thread_id}"
                    )
                self._index[key] = stitch

    # --- lookups ---
    def thread_ids(self) -> list[str]:
        return sorted(self._threads)

    def get_thread(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    def tube_of(self, thread_id: str) -> int | None:
        thread = self._threads.get(thread_id)
        return thread.tube_number if thread is not None else None

    def threads_in_tube(self, tube_number: int) -> list[Thread]:
        """Threads feeding a tube, ordered by thread id."""

        if tube_number not in TUBE_NUMBERS:
            return []
        return sorted(
            (t for t in self._threads.values() if t.tube_number == tube_number),
            key=lambda t: t.thread_id,
        )

    def get_stitch(self, thread_id: str, stitch_id: str) -> Stitch | None:
        return self._index.get((thread_id, stitch_id))

    def merged_view(self, tube_number: int) -> list[Stitch]:
        """All stitches of a tube, ordered by thread id then position.

        Python の sort は安定なので、同じ位置のスティッチはスレッド内の
        元の並び順を保つ。
        """

        merged: list[Stitch] = []
        for thread in self.threads_in_tube(tube_number):
            merged.extend(sorted(thread.stitches, key=lambda s: s.position))
        return merged

    def ranked_view(self, tube_number: int) -> list[Stitch]:
        """Stitches of a tube in rank order across threads (sentinel excluded)."""

        merged = self.merged_view(tube_number)
        return sorted(
            (s for s in merged if s.position >= READY_POSITION),
            key=lambda s: s.position,
        )

    def ready_stitches(self, tube_number: int) -> list[Stitch]:
        return [s for s in self.merged_view(tube_number) if s.position == READY_POSITION]

    def get_ready_stitch(self, tube_number: int) -> Stitch | None:
        ready = self.ready_stitches(tube_number)
        return ready[0] if ready else None

    def upcoming(self, tube_number: int, count: int = 5) -> list[Stitch]:
        """Stitches after the ready one, nearest first."""

        if count <= 0:
            return []
        later = [s for s in self.ranked_view(tube_number) if s.position > READY_POSITION]
        return later[:count]

    def __len__(self) -> int:
        return len(self._index)

    # --- mutation primitives ---
    def set_position(self, thread_id: str, stitch_id: str, position: int) -> bool:
        stitch = self.get_stitch(thread_id, stitch_id)
        if stitch is None:
            return False
        stitch.position = position
        return True

    def set_skip_distance(self, thread_id: str, stitch_id: str, skip_distance: int) -> bool:
        stitch = self.get_stitch(thread_id, stitch_id)
        if stitch is None:
            return False
        stitch.skip_distance = skip_distance
        return True

    def set_difficulty_tier(
        self, thread_id: str, stitch_id: str, tier: DifficultyTier
    ) -> bool:
        """Raise a stitch's tier. Requests to lower it are ignored."""

        stitch = self.get_stitch(thread_id, stitch_id)
        if stitch is None:
            return False
        if tier.rank < stitch.difficulty_tier.rank:
            return False
        stitch.difficulty_tier = tier
        return True
