from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..logging import logger
from ..models import PendingMutation, TubePointer
from .common import mutation_from_record, now_iso, pointer_from_record


class SQLiteProgressStore:
    """SQLite-backed progress persistence for a single learner.

    - user_stitch_progress: (user_id, thread_id, stitch_id) ごとの最新の位置・間隔・難易度
    - user_tube_position: 学習者ごとに1行、最後に居たチューブとスレッド
    """

    def __init__(self, db_path: str, learner_id: str = "anonymous") -> None:
        self.db_path = db_path
        self.learner_id = learner_id
        # SQLite は書き込みを直列化するが、接続を跨いだ BUSY を避けるためここでも揃える
        self._write_lock = threading.Lock()
        self._ensure_dirs()
        self._init_db()

    # --- low-level helpers ---
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=10.0, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        with conn:
            conn.execute("pragma journal_mode=WAL;")
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        with self._conn() as conn:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS user_stitch_progress (
                        user_id TEXT NOT NULL,
                        thread_id TEXT NOT NULL,
                        stitch_id TEXT NOT NULL,
                        position INTEGER NOT NULL,
                        skip_distance INTEGER NOT NULL,
                        difficulty_tier TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (user_id, thread_id, stitch_id)
                    );
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS user_tube_position (
                        user_id TEXT PRIMARY KEY,
                        tube_number INTEGER NOT NULL,
                        thread_id TEXT,
                        cycle_count INTEGER NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL
                    );
                    """
                )

    # --- ProgressBackend ---
    def upsert_stitch_progress(self, mutation: PendingMutation) -> bool:
        record = mutation.to_record()
        try:
            with self._write_lock, self._conn() as conn:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO user_stitch_progress(
                            user_id, thread_id, stitch_id, position,
                            skip_distance, difficulty_tier, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, thread_id, stitch_id) DO UPDATE SET
                            position = excluded.position,
                            skip_distance = excluded.skip_distance,
                            difficulty_tier = excluded.difficulty_tier,
                            updated_at = excluded.updated_at;
                        """,
                        (
                            self.learner_id,
                            record["thread_id"],
                            record["stitch_id"],
                            record["position"],
                            record["skip_distance"],
                            record["difficulty_tier"],
                            now_iso(),
                        ),
                    )
        except sqlite3.Error as exc:
            logger.warning(
                "sqlite_progress_write_failed",
                thread_id=mutation.thread_id,
                stitch_id=mutation.stitch_id,
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            return False
        return True

    def save_tube_pointer(self, pointer: TubePointer) -> bool:
        try:
            with self._write_lock, self._conn() as conn:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO user_tube_position(
                            user_id, tube_number, thread_id, cycle_count, updated_at
                        ) VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(user_id) DO UPDATE SET
                            tube_number = excluded.tube_number,
                            thread_id = excluded.thread_id,
                            cycle_count = excluded.cycle_count,
                            updated_at = excluded.updated_at;
                        """,
                        (
                            self.learner_id,
                            pointer.active_tube,
                            pointer.thread_id,
                            pointer.cycle_count,
                            now_iso(),
                        ),
                    )
        except sqlite3.Error as exc:
            logger.warning(
                "sqlite_tube_pointer_write_failed",
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            return False
        return True

    def load_tube_pointer(self) -> TubePointer | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT tube_number, thread_id, cycle_count FROM user_tube_position WHERE user_id = ?",
                (self.learner_id,),
            ).fetchone()
        if row is None:
            return None
        return pointer_from_record(
            {
                "active_tube": row["tube_number"],
                "thread_id": row["thread_id"],
                "cycle_count": row["cycle_count"],
            }
        )

    def load_stitch_progress(self) -> list[PendingMutation]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT thread_id, stitch_id, position, skip_distance, difficulty_tier
                FROM user_stitch_progress
                WHERE user_id = ?
                ORDER BY thread_id, stitch_id
                """,
                (self.learner_id,),
            ).fetchall()
        mutations = (mutation_from_record(dict(row)) for row in rows)
        return [m for m in mutations if m is not None]
