"""Ready-stitch invariant checker and repairer.

各チューブにはレディなスティッチ（position == 0）がちょうど1つ存在しなければ
ならない。ここがその修復を行う唯一の場所で、並べ替えの最後と起動時に呼ばれる。
位置の重複や欠番はレディ枠以外では詰めない（並べ替え側の計算で解消される）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .logging import logger
from .models import READY_POSITION, TUBE_NUMBERS, Stitch
from .tubes import TubeModel


@dataclass(frozen=True)
class PositionRepair:
    thread_id: str
    stitch_id: str
    old_position: int
    new_position: int


@dataclass
class TubeIntegrity:
    """Outcome of checking (and possibly repairing) one tube."""

    tube_number: int
    thread_count: int
    stitch_count: int
    ready_count: int
    repairs: list[PositionRepair] = field(default_factory=list)
    ready: Stitch | None = None

    @property
    def valid(self) -> bool:
        """Whether the tube satisfied the invariant before any repair."""

        return self.ready_count == 1

    @property
    def degraded(self) -> bool:
        return self.ready is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tube_number": self.tube_number,
            "valid": self.valid,
            "ready_count": self.ready_count,
            "thread_count": self.thread_count,
            "stitch_count": self.stitch_count,
            "ready_stitch_id": self.ready.id if self.ready else None,
            "ready_thread_id": self.ready.thread_id if self.ready else None,
            "repairs": [
                {
                    "thread_id": r.thread_id,
                    "stitch_id": r.stitch_id,
                    "old_position": r.old_position,
                    "new_position": r.new_position,
                }
                for r in self.repairs
            ],
        }


def _promote_lowest(model: TubeModel, merged: list[Stitch]) -> list[PositionRepair]:
    candidates = [s for s in merged if s.position > READY_POSITION]
    if not candidates:
        return []
    # min() は最初に見つかった最小値を返すので、同順位ならスレッド順が優先される
    chosen = min(candidates, key=lambda s: s.position)
    repair = PositionRepair(chosen.thread_id, chosen.id, chosen.position, READY_POSITION)
    model.set_position(chosen.thread_id, chosen.id, READY_POSITION)
    return [repair]


def _demote_extras(model: TubeModel, ready: list[Stitch]) -> list[PositionRepair]:
    repairs: list[PositionRepair] = []
    for new_position, extra in enumerate(ready[1:], start=1):
        repairs.append(
            PositionRepair(extra.thread_id, extra.id, extra.position, new_position)
        )
        model.set_position(extra.thread_id, extra.id, new_position)
    return repairs


def verify_tube(model: TubeModel, tube_number: int, *, repair: bool = True) -> TubeIntegrity:
    """Check that a tube has exactly one ready stitch, repairing it if not.

    - レディが0件: 正の位置で最小のスティッチを 0 に昇格する。
      スティッチが1件もなければ「レディなし」を報告するだけ（エラーではない）。
    - レディが複数: マージ順で最初のものを残し、残りを 1, 2, ... に降格する。

    Running it twice on the same state never mutates anything the second time.
    """

    threads = model.threads_in_tube(tube_number)
    merged = model.merged_view(tube_number)
    ready = [s for s in merged if s.position == READY_POSITION]
    report = TubeIntegrity(
        tube_number=tube_number,
        thread_count=len(threads),
        stitch_count=len(merged),
        ready_count=len(ready),
    )

    if repair and len(ready) == 0:
        report.repairs = _promote_lowest(model, merged)
    elif repair and len(ready) > 1:
        report.repairs = _demote_extras(model, ready)

    report.ready = model.get_ready_stitch(tube_number)

    if report.repairs:
        logger.warning(
            "tube_integrity_repaired",
            tube_number=tube_number,
            ready_count=report.ready_count,
            repairs=[f"{r.thread_id}/{r.stitch_id}:{r.old_position}->{r.new_position}" for r in report.repairs],
        )
    elif report.ready is None:
        logger.info(
            "tube_has_no_ready_stitch",
            tube_number=tube_number,
            stitch_count=report.stitch_count,
        )
    return report


def verify_all_tubes(model: TubeModel, *, repair: bool = True) -> dict[int, TubeIntegrity]:
    return {tube: verify_tube(model, tube, repair=repair) for tube in TUBE_NUMBERS}
