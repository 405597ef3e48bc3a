"""Pydantic Settings with YAML file support.

Priority (highest first): init kwargs > env vars > .env > config.yaml > config.default.yaml
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict, YamlConfigSettingsSource


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class StoreConfig(BaseModel):
    path: str = "./data/localdex.db"
    # auto: probe for sqlite-vec, fall back to brute force if it can't load
    vector_backend: Literal["auto", "native", "fallback"] = "auto"


class EmbeddingConfig(BaseModel):
    """Local embedding model. Downloaded once into cache_dir."""

    model_id: str = "sentence-transformers/all-MiniLM-L6-v2"
    batch_size: int = 32
    cache_dir: str = "./data/models"


class ChunkerConfig(BaseModel):
    chunk_size: int = 1000
    chunk_overlap: int = 120

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkerConfig":
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        return self


class IngestConfig(BaseModel):
    batch_size: int = 10  # documents per embedding group
    skip_if_unchanged: bool = True
    max_file_size: int = 50 * 1024 * 1024
    notes_max_chars: int = 500
    min_text_chars: int = 1
    docx_split_on_headings: bool = False
    supported_extensions: list[str] = [".md", ".txt", ".docx", ".pptx"]
    ignore_patterns: list[str] = [
        "~$*",
        "*.tmp",
        "*.temp",
        ".DS_Store",
        "Thumbs.db",
        ".git/**",
        "node_modules/**",
    ]


class WatcherConfig(BaseModel):
    watch_dir: str | None = "./kb"
    debounce_ms: int = 600
    max_concurrency: int = 3
    initial_scan: bool = True


class SearchConfig(BaseModel):
    default_top_k: int = 8
    max_top_k: int = 100
    preview_chars: int = 240


# ---------------------------------------------------------------------------
# Main settings
# ---------------------------------------------------------------------------

def _yaml_files() -> list[Path]:
    """Return YAML config file paths relative to the project root."""
    root = Path(os.environ.get("LOCALDEX_ROOT", "."))
    files = [root / "config.default.yaml"]
    user_cfg = root / "config.yaml"
    if user_cfg.exists():
        files.append(user_cfg)
    return files


class Settings(BaseSettings):
    """Application settings loaded from YAML + env vars."""

    model_config = SettingsConfigDict(
        env_prefix="LOCALDEX_",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    store: StoreConfig = StoreConfig()
    embedding: EmbeddingConfig = EmbeddingConfig()
    chunker: ChunkerConfig = ChunkerConfig()
    ingest: IngestConfig = IngestConfig()
    watcher: WatcherConfig = WatcherConfig()
    search: SearchConfig = SearchConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(
                settings_cls,
                yaml_file=_yaml_files(),
            ),
        )


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings(**kwargs: Any) -> Settings:
    """Lazy singleton for settings. Call reset_settings() to reload.

    Configuration is read once per process; nothing watches the YAML files.
    """
    root = Path(os.environ.get("LOCALDEX_ROOT", "."))
    load_dotenv(root / ".env", override=False)
    return Settings(**kwargs)


def reset_settings() -> None:
    """Clear the settings cache so the next get_settings() reloads from disk."""
    get_settings.cache_clear()
