from __future__ import annotations

import json
from pathlib import Path

import pytest

from tests.progress_fakes import make_thread
from triple_helix.catalog import (
    CatalogError,
    apply_progress,
    layout_tube_positions,
    load_catalog,
    load_catalog_file,
)
from triple_helix.models import DifficultyTier, PendingMutation
from triple_helix.tubes import TubeModel


def _catalog(**thread_overrides) -> dict:
    thread = {
        "thread_id": "thread-A",
        "tube_number": 1,
        "name": "Counting",
        "stitches": [
            {"id": "A-01", "content": {"question": "1 + 1"}},
            {"id": "A-02"},
            {"id": "A-03", "difficulty_tier": "l2"},
        ],
    }
    thread.update(thread_overrides)
    return {"threads": [thread]}


def test_load_catalog_defaults_position_skip_and_tier():
    threads = load_catalog(_catalog())

    stitches = threads[0].stitches
    assert [s.position for s in stitches] == [0, 1, 2]
    assert all(s.skip_distance == 3 for s in stitches)
    assert stitches[0].difficulty_tier is DifficultyTier.L1
    assert stitches[2].difficulty_tier is DifficultyTier.L2
    assert stitches[0].content == {"question": "1 + 1"}
    assert stitches[0].thread_id == "thread-A"


def test_top_level_list_is_accepted():
    threads = load_catalog(_catalog()["threads"])

    assert [t.thread_id for t in threads] == ["thread-A"]


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"thread_id": None}, "missing required field 'thread_id'"),
        ({"tube_number": None}, "missing required field 'tube_number'"),
        ({"tube_number": 4}, "tube_number must be one of"),
        ({"stitches": [{"id": "x", "position": 1}]}, "no stitch at position 0"),
        ({"stitches": [{"id": "x"}, {"id": "x"}]}, "duplicate stitch id x"),
        ({"stitches": [{"position": 0}]}, "missing required field 'id'"),
        ({"stitches": [{"id": "x", "position": -2}]}, "position must not be negative"),
        ({"stitches": [{"id": "x", "skip_distance": 0}]}, "skip_distance must be one of"),
        ({"stitches": [{"id": "x", "skip_distance": 4}]}, "skip_distance must be one of"),
        ({"stitches": [{"id": "x", "difficulty_tier": "L9"}]}, "unknown difficulty_tier"),
        ({"stitches": [{"id": "x", "position": "first"}]}, "'position' must be an integer"),
    ],
)
def test_malformed_catalogue_is_rejected(overrides, message):
    with pytest.raises(CatalogError) as excinfo:
        load_catalog(_catalog(**overrides))

    assert message in str(excinfo.value)


def test_duplicate_thread_ids_are_rejected():
    raw = {"threads": _catalog()["threads"] * 2}

    with pytest.raises(CatalogError, match="duplicate thread_id"):
        load_catalog(raw)


def test_non_list_catalogue_is_rejected():
    with pytest.raises(CatalogError):
        load_catalog({"threads": "oops"})


def test_load_catalog_file(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(_catalog()), encoding="utf-8")

    threads = load_catalog_file(path)

    assert len(threads[0].stitches) == 3


def test_load_catalog_file_reports_missing_and_invalid_files(tmp_path):
    with pytest.raises(CatalogError, match="not found"):
        load_catalog_file(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(CatalogError, match="not valid JSON"):
        load_catalog_file(broken)


def test_layout_lays_shared_tube_threads_end_to_end():
    threads = layout_tube_positions(
        [make_thread("B", 1, 2), make_thread("A", 1, 3), make_thread("C", 2, 2)]
    )
    model = TubeModel(threads)

    assert [(s.id, s.position) for s in model.merged_view(1)] == [
        ("A-00", 0),
        ("A-01", 1),
        ("A-02", 2),
        ("B-00", 3),
        ("B-01", 4),
    ]
    assert [s.position for s in model.merged_view(2)] == [0, 1]
    assert len(model.ready_stitches(1)) == 1


def test_apply_progress_overlays_known_keys_only():
    model = TubeModel([make_thread("A", 1, 3)])

    applied = apply_progress(
        model,
        [
            PendingMutation(
                thread_id="A", stitch_id="A-00", position=2, skip_distance=10,
                difficulty_tier=DifficultyTier.L3,
            ),
            PendingMutation(
                thread_id="Z", stitch_id="Z-00", position=0, skip_distance=3,
                difficulty_tier=DifficultyTier.L1,
            ),
        ],
    )

    stitch = model.get_stitch("A", "A-00")
    assert applied == 1
    assert (stitch.position, stitch.skip_distance, stitch.difficulty_tier) == (2, 10, DifficultyTier.L3)


def test_sample_catalogue_seeds_one_ready_stitch_per_tube():
    sample = Path(__file__).resolve().parents[2] / "examples" / "catalog.sample.json"

    model = TubeModel(layout_tube_positions(load_catalog_file(sample)))

    assert [model.get_ready_stitch(tube).id for tube in (1, 2, 3)] == ["A-01", "B-01", "C-01"]
    assert model.get_stitch("thread-D", "D-01").position == 2
