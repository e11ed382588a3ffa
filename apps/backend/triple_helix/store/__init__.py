from __future__ import annotations

import os

from google.cloud import firestore

from ..config import Settings, settings
from ..logging import logger
from .firestore_store import FirestoreProgressStore
from .memory import InMemoryProgressStore
from .sqlite_store import SQLiteProgressStore

_DEFAULT_EMULATOR_HOST = "127.0.0.1:8080"


def _normalize_emulator_host(raw_host: str | None) -> str | None:
    """FIRESTORE_EMULATOR_HOST で受け取ったホスト文字列を正規化する。

    スキームなしの `localhost:8080` でもクライアントオプションに渡せるよう、
    http:// を自動付与する。空文字や None は未設定として扱う。
    """

    host = (raw_host or "").strip()
    if not host:
        return None
    if host.startswith(("http://", "https://")):
        return host
    return f"http://{host}"


def _build_firestore_client(cfg: Settings) -> firestore.Client:
    """Firestore クライアントを構築する。

    - エミュレータのホストが指定されていればそちらへ接続する。
    - production 以外ではホスト未指定でも 127.0.0.1:8080 のエミュレータを優先する。
    - それ以外は Cloud Firestore へ接続する。
    """

    environment_name = (cfg.environment or "").strip().lower()
    emulator_host = _normalize_emulator_host(
        cfg.firestore_emulator_host
        or os.environ.get("FIRESTORE_EMULATOR_HOST")
        or (_DEFAULT_EMULATOR_HOST if environment_name != "production" else None)
    )
    project_id = cfg.firestore_project_id or cfg.gcp_project_id
    if emulator_host:
        # google-cloud-firestore は FIRESTORE_EMULATOR_HOST を検知して匿名認証へ切り替える。
        os.environ.setdefault(
            "FIRESTORE_EMULATOR_HOST",
            emulator_host.replace("http://", "").replace("https://", ""),
        )
        return firestore.Client(project=project_id, client_options={"api_endpoint": emulator_host})
    return firestore.Client(project=project_id)


def create_progress_backend(
    cfg: Settings | None = None,
) -> SQLiteProgressStore | FirestoreProgressStore | InMemoryProgressStore:
    """設定に応じた進捗バックエンドを生成する。"""

    cfg = cfg or settings
    backend = cfg.progress_backend
    if backend == "firestore":
        store: SQLiteProgressStore | FirestoreProgressStore | InMemoryProgressStore = (
            FirestoreProgressStore(_build_firestore_client(cfg), learner_id=cfg.learner_id)
        )
    elif backend == "memory":
        store = InMemoryProgressStore(learner_id=cfg.learner_id)
    else:
        store = SQLiteProgressStore(cfg.progress_db_path, learner_id=cfg.learner_id)
    logger.info("progress_backend_created", backend=backend, learner_id=cfg.learner_id)
    return store


__all__ = [
    "FirestoreProgressStore",
    "InMemoryProgressStore",
    "SQLiteProgressStore",
    "create_progress_backend",
]
