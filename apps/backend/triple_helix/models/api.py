from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .stitch import DifficultyTier, Stitch


class StitchView(BaseModel):
    """Scheduling view of a stitch returned to the UI (content included)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    thread_id: str
    position: int
    skip_distance: int
    difficulty_tier: DifficultyTier
    content: dict | None = None

    @classmethod
    def from_stitch(cls, stitch: Stitch | None) -> "StitchView | None":
        if stitch is None:
            return None
        return cls(
            id=stitch.id,
            thread_id=stitch.thread_id,
            position=stitch.position,
            skip_distance=stitch.skip_distance,
            difficulty_tier=stitch.difficulty_tier,
            content=stitch.content,
        )


class CompletionRequest(BaseModel):
    score: int = Field(ge=0, description="獲得点")
    max_score: int = Field(ge=1, description="満点。score と一致すれば習得")

    @model_validator(mode="after")
    def _score_within_max(self) -> "CompletionRequest":
        if self.score > self.max_score:
            raise ValueError("score must not exceed max_score")
        return self


class SessionStatsView(BaseModel):
    completions: int
    masteries: int
    total_points: int
    degraded_tubes: int


class CompletionResponse(BaseModel):
    tube_number: int
    stitch: StitchView | None
    mastered: bool
    degraded: bool = Field(description="完了時点でアクティブチューブにレディが無かった")
    target_position: int | None = None
    next_tube: int
    next_ready: StitchView | None
    cycle_count: int


class AdvanceResponse(BaseModel):
    active_tube: int
    cycle_count: int
    ready: StitchView | None


class TubeReadyResponse(BaseModel):
    tube_number: int
    ready: StitchView | None = Field(description="null ならチューブは劣化状態")
    degraded: bool


class TubeStateResponse(BaseModel):
    active_tube: int
    cycle_count: int
    tubes: list[TubeReadyResponse]
    stats: SessionStatsView


class UpcomingResponse(BaseModel):
    tube_number: int
    stitches: list[StitchView]


class PositionRepairView(BaseModel):
    thread_id: str
    stitch_id: str
    old_position: int
    new_position: int


class TubeIntegrityView(BaseModel):
    tube_number: int
    valid: bool
    ready_count: int
    thread_count: int
    stitch_count: int
    ready_stitch_id: str | None = None
    ready_thread_id: str | None = None
    repairs: list[PositionRepairView] = Field(default_factory=list)


class IntegrityResponse(BaseModel):
    tubes: list[TubeIntegrityView]


class SyncKey(BaseModel):
    thread_id: str
    stitch_id: str


class SyncFlushResponse(BaseModel):
    ok: bool
    delivered: list[SyncKey]
    failed: list[SyncKey]
    timed_out: list[SyncKey]
    in_flight: list[SyncKey] = Field(default_factory=list, description="前回の送信が終わっていないため今回は送らなかったキー")
    pointer_delivered: bool | None = None
    remaining: int


class PendingMutationView(BaseModel):
    thread_id: str
    stitch_id: str
    position: int
    skip_distance: int
    difficulty_tier: DifficultyTier


class SyncPendingResponse(BaseModel):
    count: int
    pending: list[PendingMutationView]
    pointer_pending: bool
    in_flight: list[SyncKey] = Field(default_factory=list)
