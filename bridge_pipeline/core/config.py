"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE_OPT: str | None = None
TEN_MINUTES_IN_SECONDS = 600

# Only load .env if it exists (for local development)
_env_path = Path(".env")
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path)
    ENV_FILE_OPT = str(_env_path)


class Settings(BaseSettings):
    """Pipeline configuration.

    Loads settings from environment variables. In local development, these can be
    provided via a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILE_OPT,
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Application
    app_name: str = "Bridge Pipeline"
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Snapshot and working directories
    state_file: Path = Field(
        default=Path("./generated/pipeline-state.json"),
        description="Unified pipeline state snapshot",
    )
    legacy_dir: Path = Field(
        default=Path("./generated"),
        description="Directory holding older per-phase source files",
    )
    collected_content_dir: Path = Field(
        default=Path("./generated/collected-content"),
        description="Raw collected content",
    )
    distilled_content_dir: Path = Field(
        default=Path("./generated/distilled-content"),
        description="Structured distillation output",
    )
    package_dir: Path = Field(default=Path("./generated/packages"), description="Packages")
    bundle_dir: Path = Field(default=Path("./generated/bundles"), description="Bundles")
    bundle_name: str = Field(default="porter-bridges", description="Bundle archive base name")
    package_version: Optional[str] = Field(
        default=None, description="Package version; defaults to today's date (YYYY.MM.DD)"
    )

    # Discovery
    discovery_sources_file: Optional[Path] = Field(
        default=None, description="JSON file listing sources for direct URL discovery"
    )

    # Collection
    collection_max_concurrency: int = Field(
        default=3, description="Maximum simultaneous downloads"
    )
    collection_timeout: float = Field(default=30.0, description="Per-attempt download timeout")
    collection_max_retries: int = Field(default=3, description="Attempts per source")
    min_content_length: int = Field(
        default=50, description="Shortest response body accepted as content"
    )
    user_agent: str = Field(default="bridge-pipeline/0.1.0", description="HTTP User-Agent")
    collection_circuit_failure_threshold: int = Field(
        default=5, description="Consecutive failures before a host is short-circuited"
    )
    collection_circuit_reset_timeout: float = Field(
        default=60.0, description="Seconds a short-circuited host is skipped before a trial request"
    )

    # Distillation (the upstream model enforces strict rate limits)
    distillation_max_concurrency: int = Field(
        default=1, description="Maximum simultaneous distillations"
    )
    distillation_timeout: float = Field(
        default=TEN_MINUTES_IN_SECONDS, description="Per-attempt distillation timeout"
    )
    distillation_max_retries: int = Field(default=3, description="Attempts per source")

    # Retry backoff
    retry_base_delay: float = Field(default=1.0, description="Initial backoff delay (seconds)")
    retry_backoff_factor: float = Field(default=2.0, description="Backoff multiplier")
    retry_max_delay: Optional[float] = Field(
        default=None, description="Upper bound for a single backoff delay"
    )

    # Validation gate
    validation_failure_threshold: float = Field(
        default=0.0,
        description="Tolerated failed/considered ratio per phase (0.0 blocks on any failure)",
    )
    validation_sample_size: int = Field(
        default=5, description="Failed URLs listed in a blocking error"
    )

    # OpenAI
    openai_api_key: Optional[SecretStr] = Field(default=None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(default=None, description="OpenAI-compatible base URL")
    openai_model: str = Field(default="gpt-4o-mini", description="Model used for distillation")
    llm_temperature: float = Field(default=0.2, description="Sampling temperature")
    llm_max_tokens: int = Field(default=4000, description="Completion token budget")


# Global settings instance
settings = Settings()
