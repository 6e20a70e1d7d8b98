"""
Reference material ingestion

Plain-text upload → blank-line blocks → embeddings → DocumentChunk rows
(+ Qdrant points when VECTOR_BACKEND=qdrant).

Blocks of 50 characters or fewer (headings, page numbers, stray lines) are
dropped. Embeddings are computed before anything is written, so a failed
embedding call leaves no half-ingested material behind.
"""

import logging
import re
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from database import crud
from database.models import DocumentChunk, ReferenceMaterial
from embeddings.generator import EmbeddingGenerator, get_embedding_generator

log = logging.getLogger("generation.retrieval")

MIN_CHUNK_CHARS = 50

_BLANK_LINE = re.compile(r"\n\s*\n")


def split_into_chunks(text_content: str, min_chars: int = MIN_CHUNK_CHARS) -> List[str]:
    """Split on blank lines; keep stripped blocks longer than min_chars."""
    blocks = (block.strip() for block in _BLANK_LINE.split(text_content or ""))
    return [block for block in blocks if len(block) > min_chars]


async def ingest_reference_material(
    db: Session,
    title: str,
    text_content: str,
    author: Optional[str] = None,
    embedder: Optional[EmbeddingGenerator] = None,
    qdrant=None,
) -> Tuple[ReferenceMaterial, List[DocumentChunk]]:
    """
    Store a reference material and its embedded chunks.

    Args:
        qdrant: QdrantManager to index into (None → SQL-only storage)

    Returns:
        (material, chunks) with chunks in chunk_index order
    """
    embedder = embedder or get_embedding_generator()
    blocks = split_into_chunks(text_content)
    log.info(f"[INGEST] '{title}': {len(blocks)} chunks")

    vectors = await embedder.generate_embeddings_batch(blocks) if blocks else []

    material = crud.create_reference_material(db, title=title, text_content=text_content, author=author)
    chunks = crud.add_document_chunks(
        db, material.id, list(zip(blocks, vectors)), embedding_model=embedder.model_name
    )

    if qdrant is not None and chunks:
        qdrant.index_chunks_batch(
            chunk_ids=[c.id for c in chunks],
            embeddings=[c.embedding_vector for c in chunks],
            metadatas=[{"material_id": material.id, "chunk_index": c.chunk_index} for c in chunks],
        )

    log.info(f"[INGEST] material {material.id} stored with {len(chunks)} chunks")
    return material, chunks


def delete_reference_material(db: Session, material_id: int, qdrant=None) -> bool:
    """Delete a material, its chunks and (if indexed) its Qdrant points."""
    deleted = crud.delete_reference_material(db, material_id)
    if deleted and qdrant is not None:
        qdrant.delete_by_material(material_id)
    return deleted
