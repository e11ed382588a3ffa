from .stitch import (
    DEFAULT_SKIP_DISTANCE,
    READY_POSITION,
    REPOSITIONING_SENTINEL,
    SKIP_SEQUENCE,
    TUBE_NUMBERS,
    CompletionEvent,
    DifficultyTier,
    PendingMutation,
    Stitch,
    Thread,
    TubePointer,
)

__all__ = [
    "DEFAULT_SKIP_DISTANCE",
    "READY_POSITION",
    "REPOSITIONING_SENTINEL",
    "SKIP_SEQUENCE",
    "TUBE_NUMBERS",
    "CompletionEvent",
    "DifficultyTier",
    "PendingMutation",
    "Stitch",
    "Thread",
    "TubePointer",
]
