"""
Retrieval Engine

Finds the grounding text a synthesized question is built on:
- embeds a topic phrase
- ranks reference chunks by cosine similarity (best first, ties by chunk id)
- returns the chunk at position `diversity_offset` so repeated calls for the
  same rule land on different chunks
- falls back to a generic, explicitly ungrounded text when no chunks exist

Backends:
- "sql"    → scan DocumentChunk.embedding_vector and rank in Python
- "qdrant" → nearest-neighbour query on the reference_chunks collection
"""

import math
import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from database import crud
from database.models import DocumentChunk
from generation.completion_client import CompletionClient
from generation.config import PipelineConfig
from generation.schemas import GroundingText

log = logging.getLogger("generation.retrieval")


# ─── Constants ────────────────────────────────────────────────────────────────

FALLBACK_SOURCE_TITLE = "General Knowledge"

FALLBACK_GROUNDING_TEXT = (
    "No reference material is available for this topic: {topic}. "
    "Generate from general knowledge on the topic. "
    "Provide highly accurate, verifiable answers."
)


def build_topic_phrase(question_type: str, tag_names: Sequence[str], difficulty: Optional[int]) -> str:
    """Query phrase embedded to find grounding chunks for one rule."""
    topic = ", ".join(tag_names) if tag_names else "General Knowledge"
    level = difficulty if difficulty else "medium"
    return f"Generate a {question_type} question about {topic}. Difficulty level: {level}."


def _cosine(a: List[float], b: List[float]) -> float:
    if not a or not b:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def rank_chunks(query_vector: List[float], chunks: List[DocumentChunk]) -> List[Tuple[float, DocumentChunk]]:
    """(score, chunk) pairs, highest cosine first; equal scores ordered by chunk id."""
    scored = [(_cosine(query_vector, c.embedding_vector or []), c) for c in chunks]
    scored.sort(key=lambda pair: (-pair[0], pair[1].id))
    return scored


class RetrievalEngine:
    """
    retrieve_grounding_text(topic_phrase, diversity_offset) → GroundingText

    material_ids restricts the search to chunks of those reference materials
    (all chunks when empty).
    """

    def __init__(
        self,
        db: Session,
        client: CompletionClient,
        config: Optional[PipelineConfig] = None,
        qdrant=None,
    ):
        self.db = db
        self.client = client
        self.config = config or client.config
        self.qdrant = qdrant
        if self.qdrant is None and self.config.vector_backend == "qdrant":
            from embeddings.qdrant_manager import get_qdrant_manager
            self.qdrant = get_qdrant_manager()

    async def retrieve_grounding_text(
        self,
        topic_phrase: str,
        diversity_offset: int = 0,
        material_ids: Optional[Sequence[int]] = None,
    ) -> GroundingText:
        query_vector = await self.client.embed(topic_phrase)

        if self.qdrant is not None:
            hit = self._nearest_qdrant(query_vector, diversity_offset, material_ids)
        else:
            hit = self._nearest_sql(query_vector, diversity_offset, material_ids)

        if hit is None:
            log.warning(
                f"[RETRIEVE] no reference chunks available (materials={list(material_ids or [])}); "
                f"using ungrounded fallback for '{topic_phrase}'"
            )
            return GroundingText(
                text=FALLBACK_GROUNDING_TEXT.format(topic=topic_phrase),
                source_title=FALLBACK_SOURCE_TITLE,
                grounded=False,
            )

        score, chunk = hit
        title = chunk.material.title if chunk.material else FALLBACK_SOURCE_TITLE
        log.info(
            f"[RETRIEVE] offset={diversity_offset} → chunk {chunk.id} "
            f"('{title}', score={score:.3f})"
        )
        return GroundingText(text=chunk.text, source_title=title, chunk_id=chunk.id, score=score)

    def _nearest_sql(
        self,
        query_vector: List[float],
        offset: int,
        material_ids: Optional[Sequence[int]],
    ) -> Optional[Tuple[float, DocumentChunk]]:
        chunks = crud.get_chunks(self.db, material_ids)
        if not chunks:
            return None
        ranked = rank_chunks(query_vector, chunks)
        # offsets past the end wrap around the ranked list
        return ranked[offset % len(ranked)]

    def _nearest_qdrant(
        self,
        query_vector: List[float],
        offset: int,
        material_ids: Optional[Sequence[int]],
    ) -> Optional[Tuple[float, DocumentChunk]]:
        total = self.qdrant.count_chunks(material_ids)
        if total == 0:
            return None
        results = self.qdrant.search_chunks(
            query_vector, limit=1, offset=offset % total, material_ids=material_ids
        )
        if not results:
            return None
        chunk_id = results[0]["chunk_id"]
        chunk = crud.get_chunks_by_ids(self.db, [chunk_id]).get(chunk_id)
        if chunk is None:
            log.warning(f"[RETRIEVE] Qdrant point {chunk_id} has no DocumentChunk row; scanning SQL instead")
            return self._nearest_sql(query_vector, offset, material_ids)
        return results[0]["score"], chunk
