from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


@dataclass
class SearchConfig:
    # Storage
    db_path: Optional[str] = None  # Joplin database.sqlite
    data_dir: str = os.path.join(os.path.expanduser("~"), ".local", "share", "joplin-search")

    # Embeddings
    model_name: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    device: str = "cpu"
    model_cache_dir: Optional[str] = None
    embedding_batch_size: int = 64

    # HNSW
    hnsw_m: int = 16
    hnsw_ef_construction: int = 200
    hnsw_ef_search: int = 50
    min_index_capacity: int = 2000

    # Search
    candidate_k: int = 25
    return_k: int = 10
    min_score: float = 0.30

    # Sync
    poll_interval_s: float = 10.0
    debounce_s: float = 5.0
    rebuild_interval_s: float = 300.0
    busy_timeout_ms: int = 5000

    log_level: str = "INFO"

    @property
    def index_path(self) -> str:
        return os.path.join(self.data_dir, "index.bin")


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: Optional[str] = None
    data_dir: str = SearchConfig.data_dir

    model_name: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    device: str = "cpu"
    model_cache_dir: Optional[str] = None
    embedding_batch_size: int = 64

    hnsw_m: int = 16
    hnsw_ef_construction: int = 200
    hnsw_ef_search: int = 50
    min_index_capacity: int = 2000

    candidate_k: int = 25
    return_k: int = 10
    min_score: float = 0.30

    poll_interval_s: float = 10.0
    debounce_s: float = 5.0
    rebuild_interval_s: float = 300.0
    busy_timeout_ms: int = 5000

    log_level: str = "INFO"

    @field_validator(
        "embedding_dim",
        "embedding_batch_size",
        "hnsw_m",
        "hnsw_ef_construction",
        "hnsw_ef_search",
        "min_index_capacity",
        "candidate_k",
        "return_k",
    )
    @classmethod
    def validate_positive(cls, value: int, info):  # type: ignore[override]
        if int(value) <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("poll_interval_s", "debounce_s", "rebuild_interval_s")
    @classmethod
    def validate_interval(cls, value: float, info):  # type: ignore[override]
        if float(value) < 0:
            raise ValueError(f"{info.field_name} must not be negative")
        return value

    @field_validator("min_score")
    @classmethod
    def validate_min_score(cls, value: float):  # type: ignore[override]
        if not 0.0 <= float(value) <= 1.0:
            raise ValueError("min_score must be within [0, 1]")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str):  # type: ignore[override]
        level = str(value).upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log_level: {value}")
        return level


def load_config(path: Optional[str] = None) -> SearchConfig:
    """Load config from YAML.

    Default path: ~/.config/joplin-search/joplin_search.yaml, overridable
    through JOPLIN_SEARCH_CONFIG.

    Example:

        db_path: /home/you/.config/joplin-desktop/database.sqlite
        data_dir: /home/you/.local/share/joplin-search
        min_score: 0.35
    """

    if path is None:
        env_path = os.environ.get("JOPLIN_SEARCH_CONFIG")
        if env_path:
            path = env_path
        else:
            path = os.path.join(
                os.path.expanduser("~"), ".config", "joplin-search", "joplin_search.yaml"
            )

    if not os.path.exists(path):
        return SearchConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    try:
        validated = AllowedConfig.model_validate(data or {})
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    cfg = SearchConfig(**validated.model_dump())

    cfg.data_dir = os.path.abspath(os.path.expanduser(cfg.data_dir))
    if cfg.db_path:
        cfg.db_path = os.path.abspath(os.path.expanduser(cfg.db_path))
    if cfg.model_cache_dir:
        cfg.model_cache_dir = os.path.abspath(os.path.expanduser(cfg.model_cache_dir))
    if int(cfg.return_k) > int(cfg.candidate_k):
        logging.warning(
            "return_k (%s) must not exceed candidate_k (%s); raising candidate_k.",
            cfg.return_k,
            cfg.candidate_k,
        )
        cfg.candidate_k = int(cfg.return_k)

    return cfg
