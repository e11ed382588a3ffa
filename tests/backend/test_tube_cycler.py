from __future__ import annotations

import pytest

from tests.progress_fakes import FakeProgressBackend, ManualClock, make_thread
from triple_helix.catalog import layout_tube_positions
from triple_helix.cycler import TubeCycler
from triple_helix.metrics import MetricsRegistry
from triple_helix.models import TUBE_NUMBERS
from triple_helix.sync import StitchSyncQueue
from triple_helix.tubes import TubeModel


def _cycler(threads=None, **kwargs) -> TubeCycler:
    if threads is None:
        threads = [make_thread("A", 1, 5), make_thread("B", 2, 5), make_thread("C", 3, 5)]
    model = TubeModel(layout_tube_positions(threads))
    queue = StitchSyncQueue(FakeProgressBackend(), clock=ManualClock(), metrics=MetricsRegistry())
    return TubeCycler(model, queue, **kwargs)


def test_three_advances_complete_one_cycle():
    cycler = _cycler()

    visited = [cycler.advance() for _ in range(3)]

    assert visited == [2, 3, 1]
    assert cycler.active_tube == 1
    assert cycler.get_cycle_count() == 1


@pytest.mark.parametrize("rounds", [1, 2, 7])
def test_three_n_advances_count_n_cycles(rounds):
    cycler = _cycler()

    for _ in range(3 * rounds):
        cycler.advance()

    assert cycler.active_tube == 1
    assert cycler.get_cycle_count() == rounds


def test_starting_from_a_persisted_tube_counts_cycles_on_wrap():
    cycler = _cycler(active_tube=3, cycle_count=4)

    assert cycler.advance() == 1
    assert cycler.get_cycle_count() == 5


def test_invalid_initial_tube_is_rejected():
    with pytest.raises(ValueError):
        _cycler(active_tube=4)


def test_every_tube_keeps_one_ready_stitch_across_completions():
    threads = [
        make_thread("A", 1, 4),
        make_thread("B", 1, 3),
        make_thread("C", 2, 6),
        make_thread("D", 3, 2),
    ]
    cycler = _cycler(threads)

    for i in range(60):
        score = 3 if i % 5 == 4 else 4
        cycler.complete_ready_stitch(score, 4)
        for tube in TUBE_NUMBERS:
            assert len(cycler.model.ready_stitches(tube)) == 1
            positions = [s.position for s in cycler.model.merged_view(tube)]
            assert len(positions) == len(set(positions))


def test_completion_reorders_enqueues_and_advances():
    cycler = _cycler()

    result = cycler.complete_ready_stitch(10, 10)

    assert not result.degraded
    assert result.mastered
    assert result.tube_number == 1
    assert result.next_tube == 2
    assert result.next_ready is not None and result.next_ready.id == "B-00"
    assert result.stitch is not None and result.stitch.position == 3
    pending = cycler.sync.pending()
    assert set(pending) == {("A", "A-00"), ("A", "A-01"), ("A", "A-02"), ("A", "A-03")}
    assert pending[("A", "A-00")].position == 3
    assert cycler.sync.immediate_due_at is not None
    assert cycler.sync.pending_pointer().active_tube == 2


def test_non_mastery_is_synced_on_the_schedule():
    cycler = _cycler()

    result = cycler.complete_ready_stitch(1, 2)

    assert not result.mastered
    assert set(cycler.sync.pending()) == {("A", "A-00")}
    assert cycler.sync.immediate_due_at is None


def test_degraded_tube_still_advances():
    cycler = _cycler([make_thread("A", 1, 3), make_thread("C", 3, 3)], active_tube=2)

    result = cycler.complete_ready_stitch(1, 1)

    assert result.degraded
    assert result.stitch is None and result.outcome is None
    assert cycler.active_tube == 3
    assert result.next_ready is not None and result.next_ready.id == "C-00"
    assert cycler.stats.degraded_tubes == 1
    assert cycler.sync.pending() == {}


def test_stats_accumulate_points_and_masteries():
    cycler = _cycler()

    cycler.complete_ready_stitch(5, 5)
    cycler.complete_ready_stitch(2, 5)
    cycler.complete_ready_stitch(4, 4)

    stats = cycler.stats
    assert stats.completions == 3
    assert stats.masteries == 2
    assert stats.total_points == 11


def test_select_tube_does_not_count_a_cycle():
    cycler = _cycler()

    assert cycler.select_tube(3) is True
    assert cycler.select_tube(0) is False
    assert cycler.active_tube == 3
    assert cycler.get_cycle_count() == 0
    assert cycler.pointer().thread_id == "C"


def test_preload_returns_ready_first_for_each_tube():
    cycler = _cycler()

    preload = cycler.get_stitches_to_preload(2)

    assert sorted(preload) == [1, 2, 3]
    assert [s.id for s in preload[2]] == ["B-00", "B-01"]


def test_verify_integrity_enqueues_repairs_immediately():
    cycler = _cycler()
    cycler.model.set_position("B", "B-00", 9)

    reports = cycler.verify_integrity()

    assert not reports[2].valid
    assert cycler.model.get_stitch("B", "B-01").position == 0
    assert set(cycler.sync.pending()) == {("B", "B-01")}
    assert cycler.sync.immediate_due_at is not None


def test_check_integrity_reports_without_repairing():
    cycler = _cycler()
    cycler.model.set_position("B", "B-00", 9)

    reports = cycler.check_integrity()

    assert not reports[2].valid
    assert reports[2].repairs == []
    assert cycler.get_ready_stitch(2) is None
    assert cycler.model.get_stitch("B", "B-01").position == 1
    assert len(cycler.sync) == 0
