from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DB_PATH = ".data/triple_helix.sqlite3"
PROGRESS_BACKENDS = frozenset({"sqlite", "firestore", "memory"})


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれるスケジューラ設定クラス。
    - environment: 実行環境（development/staging/production など）
    - progress_backend: 学習進捗の永続化先（sqlite/firestore/memory）
    - sync_*: 進捗同期レイヤのタイミング・タイムアウト設定
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )
    learner_id: str = Field(
        default="anonymous",
        description="Learner whose progress is synced / 進捗を同期する学習者ID",
    )
    catalog_path: str | None = Field(
        default=None,
        description="JSON catalogue loaded on API startup / 起動時に読み込むカタログJSONのパス",
    )

    # --- 進捗の永続化先 ---
    progress_backend: str = Field(
        default="sqlite",
        description="Backend of record for stitch progress (sqlite/firestore/memory) / 進捗の永続化先",
    )
    progress_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SQLite database for progress persistence / 進捗保存用SQLite DBパス",
    )
    firestore_project_id: str | None = Field(
        default=None,
        description="Firestore project ID / Firestore のプロジェクトID",
    )
    gcp_project_id: str | None = Field(
        default=None,
        description="Fallback GCP project ID / GCP プロジェクトID（Firestore 未指定時に使用）",
    )
    firestore_emulator_host: str | None = Field(
        default=None,
        description="Firestore emulator host (host:port) / Firestore エミュレータのホスト",
    )

    # --- 同期レイヤのタイミング ---
    sync_interval_seconds: float = Field(
        default=10.0,
        description="Scheduled flush interval (s) / 定期同期の間隔（秒）",
    )
    sync_immediate_delay_ms: int = Field(
        default=100,
        description="Delay before an immediate flush (ms) / 即時同期までの遅延(ms)",
    )
    sync_immediate_min_interval_ms: int = Field(
        default=1000,
        description="Minimum gap between immediate flushes (ms) / 即時同期の最小間隔(ms)",
    )
    sync_delivery_timeout_ms: int = Field(
        default=5000,
        description="Per-delivery timeout (ms) / 1件あたりの送信タイムアウト(ms)",
    )
    sync_max_workers: int = Field(
        default=4,
        description="Thread pool size for deliveries / 送信用スレッドプールのサイズ",
    )
    sync_auto_start: bool = Field(
        default=True,
        description="Start the background flush worker automatically / バックグラウンド同期を自動開始",
    )

    sentry_dsn: str | None = Field(
        default=None, description="Sentry DSN (enable if set)"
    )

    # --- Strict mode ---
    strict_mode: bool = Field(
        default=True,
        description="Fail fast on missing/invalid configuration (disable only for tests)",
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: .env に存在する未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("progress_backend", mode="before")
    @classmethod
    def _normalise_progress_backend(cls, raw_backend: object) -> str:
        """Normalise the backend name and reject unknown values.

        なぜ: `.env` で `SQLite ` のように大小文字や空白が混ざっても同じ
        永続化先を選べるようにし、綴り違いは起動時に即座に弾く。
        """

        backend = str(raw_backend or "").strip().lower()
        if backend not in PROGRESS_BACKENDS:
            allowed = ", ".join(sorted(PROGRESS_BACKENDS))
            raise ValueError(
                f"PROGRESS_BACKEND must be one of: {allowed} (got {raw_backend!r})",
            )
        return backend

    @field_validator(
        "sync_interval_seconds",
        "sync_delivery_timeout_ms",
        "sync_max_workers",
        mode="after",
    )
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("sync intervals, timeouts and worker counts must be positive")
        return value

    @field_validator(
        "sync_immediate_delay_ms",
        "sync_immediate_min_interval_ms",
        mode="after",
    )
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("immediate sync timings must not be negative")
        return value


settings = Settings()
