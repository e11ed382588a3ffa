"""Catalogue loading: raw JSON threads into validated ``Thread`` records.

カタログは次の形を受け付ける（トップレベルが配列でもよい）::

    {"threads": [
        {"thread_id": "thread-A", "tube_number": 1, "name": "...",
         "stitches": [{"id": "A-01", "position": 0, "content": {...}}, ...]}
    ]}

`position` を省略したスティッチはスレッド内の並び順を位置とする。
不正なカタログは ``CatalogError`` で起動時に拒否する（黙って劣化させない）。
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .logging import logger
from .models import (
    DEFAULT_SKIP_DISTANCE,
    READY_POSITION,
    SKIP_SEQUENCE,
    TUBE_NUMBERS,
    DifficultyTier,
    PendingMutation,
    Stitch,
    Thread,
)
from .tubes import TubeModel


class CatalogError(ValueError):
    """Raised when the catalogue cannot seed a valid scheduler."""


def _require(raw: Mapping[str, Any], key: str, where: str) -> Any:
    value = raw.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise CatalogError(f"{where}: missing required field '{key}'")
    return value


def _as_int(value: Any, field_name: str, where: str) -> int:
    # bool は int のサブクラスなので明示的に弾く
    if isinstance(value, bool):
        raise CatalogError(f"{where}: '{field_name}' must be an integer (got {value!r})")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise CatalogError(f"{where}: '{field_name}' must be an integer (got {value!r})") from exc


def _parse_stitch(raw: Any, thread_id: str, index: int) -> Stitch:
    if not isinstance(raw, Mapping):
        raise CatalogError(f"thread {thread_id}: stitch #{index} must be an object")
    stitch_id = str(_require(raw, "id", f"thread {thread_id} stitch #{index}"))
    where = f"thread {thread_id} stitch {stitch_id}"

    declared_thread = raw.get("thread_id")
    if declared_thread is not None and str(declared_thread) != thread_id:
        raise CatalogError(f"{where}: belongs to thread {declared_thread!r}")

    position = _as_int(raw.get("position", index), "position", where)
    if position < 0:
        raise CatalogError(f"{where}: position must not be negative (got {position})")

    skip_distance = _as_int(raw.get("skip_distance", DEFAULT_SKIP_DISTANCE), "skip_distance", where)
    if skip_distance not in SKIP_SEQUENCE:
        raise CatalogError(
            f"{where}: skip_distance must be one of {SKIP_SEQUENCE} (got {skip_distance})"
        )

    raw_tier = raw.get("difficulty_tier", DifficultyTier.L1.value)
    try:
        tier = DifficultyTier(str(raw_tier).strip().upper())
    except ValueError as exc:
        raise CatalogError(f"{where}: unknown difficulty_tier {raw_tier!r}") from exc

    content = raw.get("content")
    if content is not None and not isinstance(content, Mapping):
        raise CatalogError(f"{where}: content must be an object when present")

    try:
        return Stitch(
            id=stitch_id,
            thread_id=thread_id,
            position=position,
            skip_distance=skip_distance,
            difficulty_tier=tier,
            content=dict(content) if content is not None else None,
        )
    except ValidationError as exc:
        raise CatalogError(f"{where}: {exc.errors()[0].get('msg', 'invalid stitch')}") from exc


def _parse_thread(raw: Any, index: int) -> Thread:
    if not isinstance(raw, Mapping):
        raise CatalogError(f"thread #{index} must be an object")
    thread_id = str(_require(raw, "thread_id", f"thread #{index}"))
    where = f"thread {thread_id}"

    tube_number = _as_int(_require(raw, "tube_number", where), "tube_number", where)
    if tube_number not in TUBE_NUMBERS:
        raise CatalogError(f"{where}: tube_number must be one of 1, 2, 3 (got {tube_number})")

    raw_stitches = raw.get("stitches") or []
    if not isinstance(raw_stitches, Sequence) or isinstance(raw_stitches, (str, bytes)):
        raise CatalogError(f"{where}: stitches must be a list")

    stitches = [_parse_stitch(item, thread_id, i) for i, item in enumerate(raw_stitches)]
    seen: set[str] = set()
    for stitch in stitches:
        if stitch.id in seen:
            raise CatalogError(f"{where}: duplicate stitch id {stitch.id}")
        seen.add(stitch.id)
    if not any(s.position == READY_POSITION for s in stitches):
        raise CatalogError(f"{where}: no stitch at position 0")

    name = raw.get("name")
    return Thread(
        thread_id=thread_id,
        tube_number=tube_number,
        name=str(name) if name is not None else None,
        stitches=stitches,
    )


def load_catalog(raw: Any) -> list[Thread]:
    """Validate a decoded catalogue and return its threads in input order."""

    if isinstance(raw, Mapping):
        raw_threads = raw.get("threads")
    else:
        raw_threads = raw
    if not isinstance(raw_threads, Sequence) or isinstance(raw_threads, (str, bytes)):
        raise CatalogError("catalogue must be a list of threads or an object with 'threads'")

    threads = [_parse_thread(item, i) for i, item in enumerate(raw_threads)]
    seen: set[str] = set()
    for thread in threads:
        if thread.thread_id in seen:
            raise CatalogError(f"duplicate thread_id {thread.thread_id}")
        seen.add(thread.thread_id)

    logger.info(
        "catalog_loaded",
        thread_count=len(threads),
        stitch_count=sum(len(t.stitches) for t in threads),
    )
    return threads


def load_catalog_file(path: str | Path) -> list[Thread]:
    catalog_path = Path(path)
    try:
        raw = json.loads(catalog_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise CatalogError(f"catalogue file not found: {catalog_path}") from exc
    except json.JSONDecodeError as exc:
        raise CatalogError(f"catalogue file is not valid JSON: {catalog_path} ({exc.msg})") from exc
    return load_catalog(raw)


def layout_tube_positions(threads: Iterable[Thread]) -> list[Thread]:
    """Lay out threads that share a tube end to end in thread-id order.

    各スレッドは自分の位置 0 を持つが、同じチューブに複数スレッドがあると
    レディが複数になる。先頭スレッド以外は、前のスレッドの末尾の次から
    始まるように位置をずらし、チューブを1本の連続した順位空間にする。
    """

    threads = list(threads)
    offsets: dict[int, int] = {}
    for thread in sorted(threads, key=lambda t: t.thread_id):
        offset = offsets.get(thread.tube_number, 0)
        if offset:
            for stitch in thread.stitches:
                stitch.position += offset
        highest = max((s.position for s in thread.stitches), default=offset - 1)
        offsets[thread.tube_number] = max(offset, highest + 1)
    return threads


def apply_progress(model: TubeModel, records: Iterable[PendingMutation]) -> int:
    """Overlay persisted progress onto the catalogue. Returns the number applied.

    カタログに存在しないキーは無視する（コンテンツ側で削除された可能性がある）。
    """

    applied = 0
    unknown = 0
    for record in records:
        if model.get_stitch(record.thread_id, record.stitch_id) is None:
            unknown += 1
            continue
        model.set_position(record.thread_id, record.stitch_id, record.position)
        model.set_skip_distance(record.thread_id, record.stitch_id, record.skip_distance)
        model.set_difficulty_tier(record.thread_id, record.stitch_id, record.difficulty_tier)
        applied += 1
    if unknown:
        logger.info("progress_records_ignored", count=unknown)
    return applied
