"""
Runtime settings for the synthesis pipeline.

Read from the environment (.env is loaded by exam_api.py). Tests build
PipelineConfig directly with small pauses and backoffs.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _split_keys(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [k.strip() for k in raw.split(",") if k.strip()]


@dataclass
class PipelineConfig:
    api_keys: List[str] = field(default_factory=list)
    base_url: Optional[str] = None
    gpt_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536
    completion_timeout: float = 60.0
    credential_backoff: float = 1.5
    batch_size: int = 3
    batch_pause: float = 0.5
    default_language: str = "en"
    vector_backend: str = "sql"     # "sql" | "qdrant"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        keys = _split_keys(os.getenv("OPENAI_API_KEYS")) or _split_keys(os.getenv("OPENAI_API_KEY"))
        return cls(
            api_keys=keys,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            gpt_model=os.getenv("GPT_MODEL", "gpt-4o-mini"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_dim=int(os.getenv("EMBEDDING_DIM", "1536")),
            completion_timeout=float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "60")),
            credential_backoff=float(os.getenv("CREDENTIAL_BACKOFF_SECONDS", "1.5")),
            batch_size=int(os.getenv("SYNTHESIS_BATCH_SIZE", "3")),
            batch_pause=float(os.getenv("SYNTHESIS_BATCH_PAUSE_SECONDS", "0.5")),
            default_language=os.getenv("DEFAULT_LANGUAGE", "en"),
            vector_backend=os.getenv("VECTOR_BACKEND", "sql").lower(),
        )


_config: Optional[PipelineConfig] = None


def get_config() -> PipelineConfig:
    """Process-wide config, read from the environment on first use."""
    global _config
    if _config is None:
        _config = PipelineConfig.from_env()
    return _config
