"""Application configuration using environment variables."""

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    siliconflow_api_key: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("SILICONFLOW_API_KEY", "siliconflow_api_key"),
    )
    siliconflow_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.siliconflow.cn/v1"),
        validation_alias=AliasChoices("SILICONFLOW_BASE_URL", "base_url"),
    )

    chat_model: str = Field(
        default="deepseek-ai/DeepSeek-V3.2-Exp",
        validation_alias=AliasChoices("CHAT_MODEL", "chat_model"),
    )
    video_model: str = Field(
        default="Wan-AI/Wan2.2-I2V-A14B",
        validation_alias=AliasChoices("VIDEO_GENERATION_MODEL", "video_model"),
    )
    image_model: str = Field(
        default="Qwen/Qwen-Image",
        validation_alias=AliasChoices("IMAGE_GENERATION_MODEL", "image_model"),
    )
    prompt_optimization_model: str = Field(
        default="deepseek-ai/DeepSeek-V3.2-Exp",
        validation_alias=AliasChoices(
            "PROMPT_OPTIMIZATION_MODEL", "prompt_optimization_model"
        ),
    )

    # Generation parameters sent with every chat completion
    max_tokens: int = Field(
        default=4096, ge=1, validation_alias=AliasChoices("CHAT_MAX_TOKENS")
    )
    temperature: float = Field(
        default=0.7, ge=0, validation_alias=AliasChoices("CHAT_TEMPERATURE")
    )
    top_p: float = Field(
        default=0.7, gt=0, le=1, validation_alias=AliasChoices("CHAT_TOP_P")
    )
    history_limit: int = Field(
        default=20,
        ge=1,
        validation_alias=AliasChoices("CHAT_HISTORY_LIMIT", "history_limit"),
    )

    # Upstream retry policy
    upstream_max_retries: int = Field(
        default=4, ge=0, validation_alias=AliasChoices("UPSTREAM_MAX_RETRIES")
    )
    upstream_timeout: float = Field(
        default=90.0, ge=1, validation_alias=AliasChoices("UPSTREAM_TIMEOUT")
    )
    upstream_base_backoff: float = Field(
        default=2.0, ge=0, validation_alias=AliasChoices("UPSTREAM_BASE_BACKOFF")
    )

    # Per-conversation send lock
    send_lock_timeout: float = Field(
        default=30.0, gt=0, validation_alias=AliasChoices("SEND_LOCK_TIMEOUT")
    )
    session_sweep_interval: float = Field(
        default=10.0, gt=0, validation_alias=AliasChoices("SESSION_SWEEP_INTERVAL")
    )

    # Media job polling
    job_poll_interval: float = Field(
        default=5.0, gt=0, validation_alias=AliasChoices("JOB_POLL_INTERVAL")
    )
    job_max_attempts: int = Field(
        default=60, ge=1, validation_alias=AliasChoices("JOB_MAX_ATTEMPTS")
    )
    job_stale_after_seconds: int = Field(
        default=300, ge=1, validation_alias=AliasChoices("JOB_STALE_AFTER_SECONDS")
    )
    job_store_path: Path = Field(
        default_factory=lambda: Path("data/media_jobs.json"),
        validation_alias=AliasChoices("JOB_STORE_PATH", "job_store_path"),
    )
    default_image_size: str = Field(
        default="1280x720", validation_alias=AliasChoices("VIDEO_IMAGE_SIZE")
    )
    default_picture_size: str = Field(
        default="1024x1024", validation_alias=AliasChoices("IMAGE_SIZE")
    )

    chat_database_path: Path = Field(
        default_factory=lambda: Path("data/chat_history.db"),
        validation_alias=AliasChoices("CHAT_DATABASE_PATH", "chat_db"),
    )

    # Web search tool
    search_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("BOCHA_API_KEY", "BOCHA_KEY", "BOCHA_APIKEY"),
    )
    search_api_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.bocha.cn/v1/web-search"),
        validation_alias=AliasChoices("BOCHA_API_URL", "search_api_url"),
    )
    tool_http_timeout: float = Field(
        default=20.0, gt=0, validation_alias=AliasChoices("TOOL_HTTP_TIMEOUT")
    )

    # Product heuristics, kept as policy rather than logic
    source_request_keywords: list[str] = Field(
        default_factory=lambda: [
            "来源",
            "链接",
            "引用",
            "权威",
            "指南",
            "文献",
            "证据",
            "出处",
            "source",
            "link",
            "citation",
            "reference",
        ],
        validation_alias=AliasChoices("SOURCE_REQUEST_KEYWORDS"),
    )
    authoritative_domains: list[str] = Field(
        default_factory=lambda: [
            ".gov.cn",
            ".edu.cn",
            "who.int",
            "cdc.gov",
            "npc.gov.cn",
            "nhc.gov.cn",
            "chinacdc.cn",
        ],
        validation_alias=AliasChoices("AUTHORITATIVE_DOMAINS"),
    )

    # Daily message quotas; member and lifetime plans are unlimited
    daily_quota_guest: int = Field(
        default=3, ge=0, validation_alias=AliasChoices("DAILY_QUOTA_GUEST")
    )
    daily_quota_free: int = Field(
        default=10, ge=0, validation_alias=AliasChoices("DAILY_QUOTA_FREE")
    )

    @property
    def job_stale_after(self) -> timedelta:
        return timedelta(seconds=self.job_stale_after_seconds)

    @property
    def chat_completions_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    @property
    def base_url(self) -> str:
        """Return the upstream API base URL without a trailing slash."""

        return str(self.siliconflow_base_url).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["PROJECT_ROOT", "Settings", "get_settings"]
