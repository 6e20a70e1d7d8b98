"""
Embeddings package
Handles text-to-vector conversion and the optional Qdrant chunk index
"""

from .generator import (
    EmbeddingGenerator,
    get_embedding_generator,
)
from .qdrant_manager import QdrantManager, get_qdrant_manager

__all__ = [
    "EmbeddingGenerator",
    "get_embedding_generator",
    "QdrantManager",
    "get_qdrant_manager",
]
