from typing import Annotated, Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources.types import NoDecode


DEFAULT_DB_PATH = ".data/stylo.sqlite3"
_MIN_SESSION_SECRET_KEY_LENGTH = 32

StudyMode = Literal["spaced", "linear"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれるアプリ設定クラス。
    - srs_*: 復習スケジューラ（保持率・最大間隔・ファズ）
    - selector_*: 出題候補の取得件数
    - grader_*: 採点プロバイダの呼び出し制御
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )
    strict_mode: bool = Field(
        default=True,
        description="Fail fast on missing/invalid configuration (disable only for tests)",
    )

    # --- Retention scheduler ---
    srs_target_retention: float = Field(
        default=0.85,
        description="Target recall probability at the due date / 期日時点の目標想起率",
    )
    srs_maximum_interval_days: int = Field(
        default=365,
        description="Upper bound for scheduled intervals (days) / 復習間隔の上限（日）",
    )
    srs_enable_fuzz: bool = Field(
        default=True,
        description="Jitter intervals to avoid review bunching / 期日集中を避けるための揺らぎ",
    )
    srs_graduating_interval_days: int = Field(
        default=3,
        description="Interval at which a learning card graduates to review / 学習中カードが復習へ移る間隔（日）",
    )

    # --- Due-item selection ---
    selector_due_batch_size: int = Field(
        default=10,
        description="Max due cards fetched per selection / 1回の選択で取得する期日到来カード数",
    )
    selector_new_window_size: int = Field(
        default=20,
        description="Candidate window for new items / 新規アイテムの候補ウィンドウ",
    )
    default_study_mode: StudyMode = Field(
        default="spaced",
        description="Study mode for users without a stored preference / 既定の学習モード",
    )

    # --- Submission pipeline ---
    idempotency_window_seconds: int = Field(
        default=60,
        description="Duplicate-submission window (seconds) / 重複送信とみなす時間窓（秒）",
    )
    grader_max_attempts: int = Field(
        default=3,
        description="Max grading attempts on transient failures / 一時障害時の最大採点試行回数",
    )
    grader_backoff_base_seconds: float = Field(
        default=1.0,
        description="First backoff delay, doubled per attempt / 初回バックオフ（試行毎に倍）",
    )
    grader_timeout_ms: int = Field(
        default=60000,
        description="Per-attempt timeout for grading calls (ms) / 採点呼出しの試行毎タイムアウト(ms)",
    )
    candidate_text_max_chars: int = Field(
        default=10_000,
        description="Max length of a submitted imitation / 提出テキストの最大文字数",
    )

    # --- Grader provider ---
    grader_provider: Literal["openai", "local"] = Field(
        default="openai",
        description="Grading provider / 採点プロバイダ",
    )
    llm_model: str = Field(
        default="gpt-4o-mini",
        description="LLM model name / 利用するLLMモデル名",
    )
    llm_temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for grading / 採点時の温度",
    )
    llm_max_tokens: int = Field(
        default=2048,
        description="Max tokens for grader output / 採点出力の最大トークン数",
    )
    openai_api_key: str | None = Field(default=None, description="OpenAI API Key")

    # --- Quota ---
    submission_quota_capacity: int = Field(
        default=30,
        description="Graded submissions allowed per quota interval / 期間内に許可する採点数",
    )
    submission_quota_interval_seconds: float = Field(
        default=3600.0,
        description="Quota refill interval (seconds) / クォータ補充間隔（秒）",
    )

    # --- Persistence ---
    stylo_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SQLite database / SQLite DBパス",
    )

    # --- Session auth ---
    session_secret_key: str = Field(
        default="",
        description="Secret key for signing session cookies / セッションクッキー署名用シークレット",
    )
    session_cookie_name: str = Field(
        default="stylo_session",
        description="Session cookie name / セッションクッキー名",
    )
    session_max_age_seconds: int = Field(
        default=60 * 60 * 24 * 14,
        description="Session lifetime in seconds / セッションの寿命（秒）",
    )
    disable_session_auth: bool = Field(
        default=False,
        description="Trust the user id header instead of a session cookie (local/dev only)",
    )
    user_id_header: str = Field(
        default="X-User-Id",
        description="Header carrying the user id when session auth is disabled",
    )

    allowed_cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description="Comma separated CORS origins / CORS で許可するオリジン",
        validation_alias=AliasChoices("allowed_cors_origins", "cors_allowed_origins"),
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("allowed_cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator("srs_target_retention")
    @classmethod
    def _check_retention(cls, value: float) -> float:
        if not 0.0 < value < 1.0:
            raise ValueError("srs_target_retention must be within (0, 1)")
        return value

    @field_validator(
        "srs_maximum_interval_days",
        "srs_graduating_interval_days",
        "selector_due_batch_size",
        "selector_new_window_size",
        "grader_max_attempts",
        "submission_quota_capacity",
    )
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @model_validator(mode="after")
    def _check_session_secret(self) -> "Settings":
        if not self.strict_mode or self.disable_session_auth:
            return self
        secret = self.session_secret_key.strip()
        if len(secret) < _MIN_SESSION_SECRET_KEY_LENGTH:
            raise ValueError(
                "SESSION_SECRET_KEY must be at least "
                f"{_MIN_SESSION_SECRET_KEY_LENGTH} characters in strict mode"
            )
        return self


settings = Settings()
