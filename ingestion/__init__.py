"""
Ingestion Package

Reference material upload pipeline:
1. Split plain text on blank lines (blocks > 50 chars)
2. Embed (text-embedding-3-small, batched)
3. Store DocumentChunk rows (+ Qdrant index when enabled)
"""

from .reference_ingest import (
    split_into_chunks,
    ingest_reference_material,
    delete_reference_material,
)

__all__ = [
    "split_into_chunks",
    "ingest_reference_material",
    "delete_reference_material",
]
