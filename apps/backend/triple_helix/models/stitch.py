from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# 習得時に進める距離の系列。100 で頭打ち。
SKIP_SEQUENCE: tuple[int, ...] = (3, 5, 10, 25, 100)
DEFAULT_SKIP_DISTANCE = SKIP_SEQUENCE[0]
TUBE_NUMBERS: tuple[int, ...] = (1, 2, 3)
READY_POSITION = 0
# 並べ替え中のスティッチを位置計算から除外するための一時値
REPOSITIONING_SENTINEL = -1


class DifficultyTier(str, Enum):
    """Distractor level of a stitch. Only ever moves upwards."""

    L1 = "L1"
    L2 = "L2"
    L3 = "L3"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def advanced(self) -> "DifficultyTier":
        """Return the next tier, or the same tier when already at the top."""

        index = self.rank
        if index >= len(_TIER_ORDER) - 1:
            return self
        return _TIER_ORDER[index + 1]


_TIER_ORDER: tuple[DifficultyTier, ...] = (
    DifficultyTier.L1,
    DifficultyTier.L2,
    DifficultyTier.L3,
)


class Stitch(BaseModel):
    """Scheduling metadata of a single content unit.

    `position` は所属チューブ内の通し順位。0 が「レディ」（次に出題される）
    スティッチで、-1 は並べ替え中を表す一時値。`content` はスケジューラでは
    一切変更しない不透明なペイロード。
    """

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "id": "stitch-A-01",
                    "thread_id": "thread-A",
                    "position": 0,
                    "skip_distance": 3,
                    "difficulty_tier": "L1",
                }
            ]
        }
    )

    id: str = Field(min_length=1)
    thread_id: str = Field(min_length=1)
    position: int = Field(ge=REPOSITIONING_SENTINEL)
    skip_distance: int = DEFAULT_SKIP_DISTANCE
    difficulty_tier: DifficultyTier = DifficultyTier.L1
    content: dict[str, Any] | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.thread_id, self.id)

    @property
    def is_ready(self) -> bool:
        return self.position == READY_POSITION


class Thread(BaseModel):
    """A named collection of stitches feeding exactly one tube."""

    thread_id: str = Field(min_length=1)
    tube_number: int = Field(ge=1, le=len(TUBE_NUMBERS))
    name: str | None = None
    stitches: list[Stitch] = Field(default_factory=list)


class CompletionEvent(BaseModel):
    """One finished attempt at a stitch, consumed exactly once."""

    model_config = ConfigDict(frozen=True)

    thread_id: str = Field(min_length=1)
    stitch_id: str = Field(min_length=1)
    score: int = Field(ge=0)
    max_score: int = Field(ge=1)

    @model_validator(mode="after")
    def _score_within_max(self) -> "CompletionEvent":
        if self.score > self.max_score:
            raise ValueError(
                f"score {self.score} exceeds max_score {self.max_score}",
            )
        return self

    @property
    def mastered(self) -> bool:
        return self.score == self.max_score


class PendingMutation(BaseModel):
    """Latest scheduling fields of one stitch, waiting for delivery.

    送信は常にこの単位で丸ごと行い、フィールドの一部だけが反映される
    状態を作らない。
    """

    model_config = ConfigDict(frozen=True)

    thread_id: str = Field(min_length=1)
    stitch_id: str = Field(min_length=1)
    position: int = Field(ge=REPOSITIONING_SENTINEL)
    skip_distance: int
    difficulty_tier: DifficultyTier

    @property
    def key(self) -> tuple[str, str]:
        return (self.thread_id, self.stitch_id)

    @classmethod
    def from_stitch(cls, stitch: Stitch) -> "PendingMutation":
        return cls(
            thread_id=stitch.thread_id,
            stitch_id=stitch.id,
            position=stitch.position,
            skip_distance=stitch.skip_distance,
            difficulty_tier=stitch.difficulty_tier,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "stitch_id": self.stitch_id,
            "position": self.position,
            "skip_distance": self.skip_distance,
            "difficulty_tier": self.difficulty_tier.value,
        }


class TubePointer(BaseModel):
    """Persisted "where the learner was" marker used at startup."""

    model_config = ConfigDict(frozen=True)

    active_tube: int = Field(ge=1, le=len(TUBE_NUMBERS))
    thread_id: str | None = None
    cycle_count: int = Field(default=0, ge=0)
