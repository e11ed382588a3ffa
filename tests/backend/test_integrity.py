from __future__ import annotations

from tests.progress_fakes import make_thread
from triple_helix.integrity import verify_all_tubes, verify_tube
from triple_helix.models import Stitch, Thread
from triple_helix.tubes import TubeModel


def _thread(thread_id: str, tube: int, positions: list[int]) -> Thread:
    return Thread(
        thread_id=thread_id,
        tube_number=tube,
        stitches=[
            Stitch(id=f"{thread_id}{i}", thread_id=thread_id, position=p)
            for i, p in enumerate(positions)
        ],
    )


def _snapshot(model: TubeModel, tube: int) -> list[tuple[str, int]]:
    return [(s.id, s.position) for s in model.merged_view(tube)]


def test_valid_tube_is_left_alone():
    model = TubeModel([make_thread("A", 1, 3)])

    report = verify_tube(model, 1)

    assert report.valid
    assert report.repairs == []
    assert report.ready is not None and report.ready.id == "A-00"


def test_zero_ready_promotes_smallest_positive_position():
    model = TubeModel([_thread("A", 1, [4, 2, 7]), _thread("B", 1, [3])])

    report = verify_tube(model, 1)

    assert not report.valid
    assert report.ready_count == 0
    assert [(r.stitch_id, r.old_position, r.new_position) for r in report.repairs] == [("A1", 2, 0)]
    assert model.get_stitch("A", "A1").position == 0


def test_zero_ready_tie_is_broken_by_thread_order():
    model = TubeModel([_thread("B", 1, [2]), _thread("A", 1, [2])])

    verify_tube(model, 1)

    assert model.get_stitch("A", "A0").position == 0
    assert model.get_stitch("B", "B0").position == 2


def test_multiple_ready_keeps_first_and_demotes_the_rest():
    model = TubeModel([_thread("A", 1, [0, 5]), _thread("B", 1, [0]), _thread("C", 1, [0])])

    report = verify_tube(model, 1)

    assert report.ready_count == 3
    assert model.get_stitch("A", "A0").position == 0
    assert model.get_stitch("B", "B0").position == 1
    assert model.get_stitch("C", "C0").position == 2
    assert len(model.ready_stitches(1)) == 1


def test_empty_tube_reports_no_ready_stitch_without_error():
    model = TubeModel([make_thread("A", 1, 2)])

    report = verify_tube(model, 2)

    assert report.degraded
    assert report.stitch_count == 0
    assert report.repairs == []


def test_verifier_is_idempotent():
    model = TubeModel([_thread("A", 1, [3, 0, 0, 6]), _thread("B", 1, [0, 1])])

    verify_tube(model, 1)
    after_first = _snapshot(model, 1)
    second = verify_tube(model, 1)

    assert second.repairs == []
    assert second.valid
    assert _snapshot(model, 1) == after_first


def test_check_only_mode_does_not_mutate():
    model = TubeModel([_thread("A", 1, [1, 2])])

    report = verify_tube(model, 1, repair=False)

    assert report.repairs == []
    assert report.degraded
    assert _snapshot(model, 1) == [("A0", 1), ("A1", 2)]


def test_verify_all_tubes_covers_each_tube():
    model = TubeModel([make_thread("A", 1, 2), make_thread("B", 3, 2)])

    reports = verify_all_tubes(model)

    assert sorted(reports) == [1, 2, 3]
    assert reports[1].thread_count == 1
    assert reports[2].degraded
    assert reports[3].to_dict()["ready_stitch_id"] == "B-00"
