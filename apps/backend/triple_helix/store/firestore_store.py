from __future__ import annotations

from google.api_core import exceptions as gexc
from google.cloud import firestore

from ..logging import logger
from ..models import PendingMutation, TubePointer
from .common import mutation_from_record, now_iso, pointer_from_record


STITCH_PROGRESS_COLLECTION = "stitch_progress"
TUBE_POSITIONS_COLLECTION = "tube_positions"


class FirestoreProgressStore:
    """Firestore 上の学習進捗ストア。

    - stitch_progress/{learner}:{thread}:{stitch}: スティッチごとの最新状態
    - tube_positions/{learner}: 最後にアクティブだったチューブ

    書き込みは常に ``set(merge=True)`` の丸ごと上書きで、同じ内容を何度
    送っても結果は変わらない。API エラーは False を返し、同期レイヤが
    そのキーを次回へ持ち越す。
    """

    def __init__(self, client: firestore.Client, learner_id: str = "anonymous") -> None:
        self._client = client
        self.learner_id = learner_id
        self._progress = client.collection(STITCH_PROGRESS_COLLECTION)
        self._positions = client.collection(TUBE_POSITIONS_COLLECTION)

    def _progress_doc_id(self, thread_id: str, stitch_id: str) -> str:
        return f"{self.learner_id}:{thread_id}:{stitch_id}"

    def upsert_stitch_progress(self, mutation: PendingMutation) -> bool:
        payload = {
            **mutation.to_record(),
            "learner_id": self.learner_id,
            "updated_at": now_iso(),
        }
        doc_ref = self._progress.document(
            self._progress_doc_id(mutation.thread_id, mutation.stitch_id)
        )
        try:
            doc_ref.set(payload, merge=True)
        except gexc.GoogleAPIError as exc:
            logger.warning(
                "firestore_progress_write_failed",
                thread_id=mutation.thread_id,
                stitch_id=mutation.stitch_id,
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            return False
        return True

    def save_tube_pointer(self, pointer: TubePointer) -> bool:
        payload = {
            "learner_id": self.learner_id,
            "active_tube": pointer.active_tube,
            "thread_id": pointer.thread_id,
            "cycle_count": pointer.cycle_count,
            "updated_at": now_iso(),
        }
        try:
            self._positions.document(self.learner_id).set(payload, merge=True)
        except gexc.GoogleAPIError as exc:
            logger.warning(
                "firestore_tube_pointer_write_failed",
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            return False
        return True

    def load_tube_pointer(self) -> TubePointer | None:
        snapshot = self._positions.document(self.learner_id).get()
        if not snapshot.exists:
            return None
        return pointer_from_record(snapshot.to_dict() or {})

    def load_stitch_progress(self) -> list[PendingMutation]:
        query = self._progress.where("learner_id", "==", self.learner_id)
        mutations: list[PendingMutation] = []
        for doc in query.stream():
            mutation = mutation_from_record(doc.to_dict() or {})
            if mutation is not None:
                mutations.append(mutation)
        mutations.sort(key=lambda m: m.key)
        return mutations
