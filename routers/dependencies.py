"""
Shared FastAPI dependencies for the generation routers.
Tests swap these out through app.dependency_overrides.
"""

from typing import Optional

from embeddings.qdrant_manager import QdrantManager, get_qdrant_manager
from generation.completion_client import CompletionClient, get_completion_client
from generation.config import get_config


def get_client() -> CompletionClient:
    """Process-wide completion client (credential pool from OPENAI_API_KEYS)."""
    return get_completion_client()


def get_vector_index() -> Optional[QdrantManager]:
    """Qdrant manager when VECTOR_BACKEND=qdrant, else None (SQL scan)."""
    if get_config().vector_backend == "qdrant":
        return get_qdrant_manager()
    return None
