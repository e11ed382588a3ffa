from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from ..logging import logger
from ..models import PendingMutation, TubePointer


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def normalize_non_negative_int(value: Any) -> int:
    """与えられた値を非負整数に正規化する（不正値/負値は0）。"""

    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return 0
    return ivalue if ivalue >= 0 else 0


def mutation_from_record(record: Mapping[str, Any]) -> PendingMutation | None:
    """Rebuild a persisted progress row. Unreadable rows are skipped, not fatal.

    なぜ: 1件の壊れた行で起動全体が失敗すると学習者が何も出来なくなる。
    読めない行はログに残し、カタログ上の初期値をそのまま使う。
    """

    try:
        return PendingMutation(
            thread_id=str(record.get("thread_id") or ""),
            stitch_id=str(record.get("stitch_id") or ""),
            position=record.get("position"),
            skip_distance=record.get("skip_distance"),
            difficulty_tier=record.get("difficulty_tier"),
        )
    except ValidationError as exc:
        logger.warning(
            "progress_record_skipped",
            thread_id=record.get("thread_id"),
            stitch_id=record.get("stitch_id"),
            error_count=exc.error_count(),
        )
        return None


def pointer_from_record(record: Mapping[str, Any] | None) -> TubePointer | None:
    if not record:
        return None
    try:
        return TubePointer(
            active_tube=record.get("active_tube") or record.get("tube_number"),
            thread_id=record.get("thread_id"),
            cycle_count=normalize_non_negative_int(record.get("cycle_count")),
        )
    except ValidationError as exc:
        logger.warning("tube_pointer_record_skipped", error_count=exc.error_count())
        return None
