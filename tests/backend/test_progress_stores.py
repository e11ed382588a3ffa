from __future__ import annotations

import os
import types

import pytest

from tests.progress_fakes import FakeFirestoreClient
from triple_helix import store as progress_store
from triple_helix.config import Settings
from triple_helix.models import DifficultyTier, PendingMutation, TubePointer
from triple_helix.store import (
    FirestoreProgressStore,
    InMemoryProgressStore,
    SQLiteProgressStore,
    create_progress_backend,
)


def _mutation(stitch_id: str = "s1", position: int = 3, tier: DifficultyTier = DifficultyTier.L2) -> PendingMutation:
    return PendingMutation(
        thread_id="thread-A",
        stitch_id=stitch_id,
        position=position,
        skip_distance=5,
        difficulty_tier=tier,
    )


def test_sqlite_store_upserts_and_reloads(tmp_path):
    db_path = str(tmp_path / "nested" / "progress.sqlite3")
    store = SQLiteProgressStore(db_path, learner_id="learner-1")

    assert store.upsert_stitch_progress(_mutation(position=3))
    assert store.upsert_stitch_progress(_mutation(position=8, tier=DifficultyTier.L3))
    assert store.upsert_stitch_progress(_mutation("s0", position=0))

    reloaded = SQLiteProgressStore(db_path, learner_id="learner-1").load_stitch_progress()
    assert [(m.stitch_id, m.position, m.difficulty_tier) for m in reloaded] == [
        ("s0", 0, DifficultyTier.L2),
        ("s1", 8, DifficultyTier.L3),
    ]


def test_sqlite_store_keeps_learners_apart(tmp_path):
    db_path = str(tmp_path / "progress.sqlite3")
    SQLiteProgressStore(db_path, learner_id="a").upsert_stitch_progress(_mutation())

    assert SQLiteProgressStore(db_path, learner_id="b").load_stitch_progress() == []


def test_sqlite_store_round_trips_the_tube_pointer(tmp_path):
    store = SQLiteProgressStore(str(tmp_path / "progress.sqlite3"))

    assert store.load_tube_pointer() is None
    assert store.save_tube_pointer(TubePointer(active_tube=2, thread_id="thread-B", cycle_count=3))
    assert store.save_tube_pointer(TubePointer(active_tube=3, thread_id=None, cycle_count=4))

    assert store.load_tube_pointer() == TubePointer(active_tube=3, thread_id=None, cycle_count=4)


def test_firestore_store_writes_one_document_per_stitch():
    client = FakeFirestoreClient()
    store = FirestoreProgressStore(client, learner_id="learner-1")  # type: ignore[arg-type]

    assert store.upsert_stitch_progress(_mutation(position=3))
    assert store.upsert_stitch_progress(_mutation(position=9))

    docs = client._data["stitch_progress"]
    assert list(docs) == ["learner-1:thread-A:s1"]
    assert docs["learner-1:thread-A:s1"]["position"] == 9
    assert docs["learner-1:thread-A:s1"]["difficulty_tier"] == "L2"
    assert docs["learner-1:thread-A:s1"]["learner_id"] == "learner-1"


def test_firestore_store_loads_only_its_learner():
    client = FakeFirestoreClient()
    FirestoreProgressStore(client, learner_id="other").upsert_stitch_progress(_mutation("x"))  # type: ignore[arg-type]
    store = FirestoreProgressStore(client, learner_id="me")  # type: ignore[arg-type]
    store.upsert_stitch_progress(_mutation("b"))
    store.upsert_stitch_progress(_mutation("a"))

    assert [m.stitch_id for m in store.load_stitch_progress()] == ["a", "b"]


def test_firestore_store_reports_api_errors_as_failed_delivery():
    client = FakeFirestoreClient()
    client.fail_writes = True
    store = FirestoreProgressStore(client)  # type: ignore[arg-type]

    assert store.upsert_stitch_progress(_mutation()) is False
    assert store.save_tube_pointer(TubePointer(active_tube=1)) is False


def test_firestore_store_tube_pointer():
    client = FakeFirestoreClient()
    store = FirestoreProgressStore(client, learner_id="me")  # type: ignore[arg-type]

    assert store.load_tube_pointer() is None
    store.save_tube_pointer(TubePointer(active_tube=2, thread_id="t", cycle_count=1))

    assert client._data["tube_positions"]["me"]["active_tube"] == 2
    assert store.load_tube_pointer() == TubePointer(active_tube=2, thread_id="t", cycle_count=1)


def test_unreadable_records_are_skipped():
    client = FakeFirestoreClient()
    client.collection("stitch_progress").document("me:t:bad").set(
        {"learner_id": "me", "thread_id": "t", "stitch_id": "bad", "position": -7}
    )
    store = FirestoreProgressStore(client, learner_id="me")  # type: ignore[arg-type]

    assert store.load_stitch_progress() == []


def test_in_memory_store():
    store = InMemoryProgressStore()
    store.upsert_stitch_progress(_mutation(position=1))
    store.upsert_stitch_progress(_mutation(position=2))

    assert [m.position for m in store.load_stitch_progress()] == [2]
    assert store.load_tube_pointer() is None


def test_create_progress_backend_by_setting(tmp_path):
    memory = create_progress_backend(Settings(progress_backend="memory", learner_id="x"))
    sqlite = create_progress_backend(
        Settings(progress_backend=" SQLite ", progress_db_path=str(tmp_path / "p.sqlite3"))
    )

    assert isinstance(memory, InMemoryProgressStore) and memory.learner_id == "x"
    assert isinstance(sqlite, SQLiteProgressStore)


def test_normalize_emulator_host():
    assert progress_store._normalize_emulator_host("firestore-emulator:8080") == "http://firestore-emulator:8080"
    assert progress_store._normalize_emulator_host("https://emu:1") == "https://emu:1"
    assert progress_store._normalize_emulator_host("  ") is None


def test_firestore_backend_uses_the_emulator_host(monkeypatch):
    """エミュレータのホストを設定したとき api_endpoint と環境変数に反映されることを確認する。"""

    # setenv → delenv の順にすると、テスト後に「未設定」へ確実に戻る
    monkeypatch.setenv("FIRESTORE_EMULATOR_HOST", "placeholder:1")
    monkeypatch.delenv("FIRESTORE_EMULATOR_HOST")
    captured: dict[str, object] = {}

    class DummyClient:
        def __init__(self, project=None, client_options=None):
            captured["project"] = project
            captured["client_options"] = client_options

        def collection(self, name):
            return FakeFirestoreClient().collection(name)

    monkeypatch.setattr(progress_store, "firestore", types.SimpleNamespace(Client=DummyClient))

    backend = create_progress_backend(
        Settings(
            progress_backend="firestore",
            firestore_project_id="triple-helix-local",
            firestore_emulator_host="firestore-emulator:8080",
        )
    )

    assert isinstance(backend, FirestoreProgressStore)
    assert captured["project"] == "triple-helix-local"
    assert captured["client_options"] == {"api_endpoint": "http://firestore-emulator:8080"}
    assert os.environ["FIRESTORE_EMULATOR_HOST"] == "firestore-emulator:8080"


def test_production_without_emulator_connects_to_cloud(monkeypatch):
    monkeypatch.delenv("FIRESTORE_EMULATOR_HOST", raising=False)
    captured: dict[str, object] = {}

    class DummyClient:
        def __init__(self, project=None, **kwargs):
            captured["project"] = project
            captured["kwargs"] = kwargs

        def collection(self, name):
            return FakeFirestoreClient().collection(name)

    monkeypatch.setattr(progress_store, "firestore", types.SimpleNamespace(Client=DummyClient))

    create_progress_backend(
        Settings(progress_backend="firestore", environment="production", gcp_project_id="prod")
    )

    assert captured == {"project": "prod", "kwargs": {}}


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError):
        Settings(progress_backend="redis")
