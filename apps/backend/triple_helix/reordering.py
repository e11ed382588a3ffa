"""Spaced-repetition reordering applied when a stitch is completed.

習得（score == max_score）時:
1. 着地位置 target = 現在の skip_distance（現在位置 + skip ではない）
2. 完了スティッチを -1 にして以降のシフト計算から外す
3. 同じチューブ内（全スレッド横断）で位置が [1, target] のものを 1 つ前に詰める
4. 完了スティッチを target に置く
5. skip_distance を系列 [3, 5, 10, 25, 100] の次の値へ進める
6. difficulty_tier を 1 段上げる（下げることはない）
7. 整合性チェックでレディがちょうど1つであることを保証する

未習得時は位置と難易度を変えず、skip_distance だけを先頭値へ戻す。
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from .integrity import TubeIntegrity, verify_tube
from .logging import logger
from .models import (
    DEFAULT_SKIP_DISTANCE,
    READY_POSITION,
    REPOSITIONING_SENTINEL,
    SKIP_SEQUENCE,
    CompletionEvent,
    Stitch,
)
from .tubes import TubeModel


def is_mastery(score: int, max_score: int) -> bool:
    return score == max_score


def next_skip_distance(current: int) -> int:
    """Advance along the skip sequence, staying at the cap once reached.

    系列に無い値（壊れた状態）は例外にせず上限値へ丸める。
    """

    try:
        index = SKIP_SEQUENCE.index(current)
    except ValueError:
        logger.warning(
            "skip_distance_out_of_sequence",
            skip_distance=current,
            clamped_to=SKIP_SEQUENCE[-1],
        )
        return SKIP_SEQUENCE[-1]
    return SKIP_SEQUENCE[min(index + 1, len(SKIP_SEQUENCE) - 1)]


def landing_position(skip_distance: int) -> int:
    """Position a mastered stitch lands on: exactly its skip distance."""

    if skip_distance < 1:
        return SKIP_SEQUENCE[-1]
    return skip_distance


def plan_pull_forward(merged: Sequence[Stitch], target: int) -> list[tuple[Stitch, int]]:
    """Return ``(stitch, new_position)`` for every tube-mate pulled one step forward.

    Only stitches in ``[1, target]`` move. The stitch being repositioned sits
    on the sentinel and is therefore never part of the plan.
    """

    return [
        (stitch, stitch.position - 1)
        for stitch in merged
        if stitch.position != REPOSITIONING_SENTINEL and 1 <= stitch.position <= target
    ]


@dataclass
class ReorderOutcome:
    stitch: Stitch
    tube_number: int
    mastered: bool
    previous_position: int
    target_position: int | None = None
    shifted: list[Stitch] = field(default_factory=list)
    repaired: list[Stitch] = field(default_factory=list)
    integrity: TubeIntegrity | None = None

    @property
    def touched(self) -> list[Stitch]:
        """Every stitch whose scheduling fields may have changed, without duplicates."""

        seen: set[tuple[str, str]] = set()
        ordered: list[Stitch] = []
        for stitch in (self.stitch, *self.shifted, *self.repaired):
            if stitch.key in seen:
                continue
            seen.add(stitch.key)
            ordered.append(stitch)
        return ordered


def _apply_mastery(model: TubeModel, stitch: Stitch, tube_number: int) -> ReorderOutcome:
    outcome = ReorderOutcome(
        stitch=stitch,
        tube_number=tube_number,
        mastered=True,
        previous_position=stitch.position,
    )
    target = landing_position(stitch.skip_distance)
    outcome.target_position = target

    model.set_position(stitch.thread_id, stitch.id, REPOSITIONING_SENTINEL)
    plan = plan_pull_forward(model.merged_view(tube_number), target)
    for mate, new_position in plan:
        model.set_position(mate.thread_id, mate.id, new_position)
        outcome.shifted.append(mate)
    model.set_position(stitch.thread_id, stitch.id, target)

    model.set_skip_distance(stitch.thread_id, stitch.id, next_skip_distance(stitch.skip_distance))
    model.set_difficulty_tier(stitch.thread_id, stitch.id, stitch.difficulty_tier.advanced())

    outcome.integrity = verify_tube(model, tube_number)
    for repair in outcome.integrity.repairs:
        repaired = model.get_stitch(repair.thread_id, repair.stitch_id)
        if repaired is not None:
            outcome.repaired.append(repaired)
    logger.info(
        "stitch_mastered",
        thread_id=stitch.thread_id,
        stitch_id=stitch.id,
        tube_number=tube_number,
        target_position=target,
        shifted=len(outcome.shifted),
        skip_distance=stitch.skip_distance,
        difficulty_tier=stitch.difficulty_tier.value,
    )
    return outcome


def _apply_non_mastery(model: TubeModel, stitch: Stitch, tube_number: int) -> ReorderOutcome:
    model.set_skip_distance(stitch.thread_id, stitch.id, DEFAULT_SKIP_DISTANCE)
    logger.info(
        "stitch_not_mastered",
        thread_id=stitch.thread_id,
        stitch_id=stitch.id,
        tube_number=tube_number,
        position=stitch.position,
    )
    return ReorderOutcome(
        stitch=stitch,
        tube_number=tube_number,
        mastered=False,
        previous_position=stitch.position,
    )


def apply_completion(model: TubeModel, event: CompletionEvent) -> ReorderOutcome | None:
    """Apply one completion event to the model.

    Returns ``None`` when the thread or stitch is unknown; nothing is mutated
    in that case.
    """

    stitch = model.get_stitch(event.thread_id, event.stitch_id)
    tube_number = model.tube_of(event.thread_id)
    if stitch is None or tube_number is None:
        logger.warning(
            "completion_target_not_found",
            thread_id=event.thread_id,
            stitch_id=event.stitch_id,
        )
        return None
    if stitch.position != READY_POSITION:
        logger.info(
            "completion_for_non_ready_stitch",
            thread_id=stitch.thread_id,
            stitch_id=stitch.id,
            position=stitch.position,
        )
    if is_mastery(event.score, event.max_score):
        return _apply_mastery(model, stitch, tube_number)
    return _apply_non_mastery(model, stitch, tube_number)
