from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_config_dir() -> Path:
    return Path.home() / ".config" / "songdna"


class Settings(BaseSettings):
    """Runtime configuration for the SongDNA worker process."""

    model_config = SettingsConfigDict(
        env_prefix="SONGDNA_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    config_dir: Path = Field(default_factory=_default_config_dir)
    analysis_version: str = Field(default="2.0", max_length=32)
    export_version: str = Field(default="2.0", max_length=16)
    repository_backend: Literal["memory", "sqlite"] = Field(
        default="memory",
        description="Persistence backend for analysed song DNA.",
    )
    database_path: Path | None = Field(
        default=None,
        description="SQLite database file (defaults to <config_dir>/songdna.db).",
    )
    generator_backend: Literal["template", "transformers"] = Field(
        default="template",
        description="Text-generation collaborator used for new lyrics.",
    )
    generator_model_id: str = Field(
        default="gpt2",
        max_length=128,
        description="Hugging Face model id for the transformers backend.",
    )
    generator_max_new_tokens: int = Field(default=160, ge=16, le=2048)
    default_creativity: float = Field(default=5.0, ge=0.0, le=10.0)
    retry_budget: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Constraint retries per section before falling back.",
    )
    max_concurrent_sections: int = Field(default=3, ge=1, le=16)
    collaborator_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    collaborator_max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=0.5, ge=0.0, le=30.0)
    backoff_max_seconds: float = Field(default=8.0, ge=0.0, le=120.0)
    syllable_acceptance_ratio: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description="Share of lines that must land inside the syllable band.",
    )
    signature_word_count: int = Field(default=8, ge=1, le=50)
    bars_per_line: int = Field(default=1, ge=1, le=16)

    @model_validator(mode="after")
    def _align_backoff(self) -> "Settings":
        if self.backoff_max_seconds < self.backoff_base_seconds:
            self.backoff_max_seconds = self.backoff_base_seconds
        if self.database_path is None:
            self.database_path = self.config_dir / "songdna.db"
        return self

    def ensure_directories(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        if self.database_path is not None:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
