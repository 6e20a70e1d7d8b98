"""
Qdrant Vector Database Manager
Optional vector index for reference material chunks (VECTOR_BACKEND=qdrant)
"""

import logging
from typing import List, Dict, Optional, Any, Sequence
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance, VectorParams, PointStruct,
    Filter, FieldCondition, MatchValue, MatchAny, FilterSelector,
)
import os

log = logging.getLogger("generation.retrieval")


class QdrantManager:
    """
    Manages the reference_chunks collection.

    Point id = chunk_id (DocumentChunk primary key); payload carries
    chunk_id, material_id and chunk_index so results can be scoped to the
    materials a blueprint lists.
    """

    COLLECTION_CHUNKS = "reference_chunks"
    EMBEDDING_DIM = 1536  # text-embedding-3-small

    def __init__(
        self,
        host: str = None,
        port: int = None,
        url: str = None,
        client: Optional[QdrantClient] = None,
        embedding_dim: Optional[int] = None,
    ):
        """
        Initialize Qdrant client

        Args:
            host: Qdrant host (default: localhost)
            port: Qdrant port (default: 6333)
            url: Full URL (overrides host/port), e.g. ":memory:" for a local index
            client: Pre-built client (overrides everything else)
        """
        if embedding_dim:
            self.EMBEDDING_DIM = embedding_dim

        url = url or os.getenv("QDRANT_URL")
        if client is not None:
            self.client = client
            where = "provided client"
        elif url == ":memory:":
            self.client = QdrantClient(location=":memory:")
            where = url
        elif url:
            self.client = QdrantClient(url=url)
            where = url
        else:
            host = host or os.getenv("QDRANT_HOST", "localhost")
            port = port or int(os.getenv("QDRANT_PORT", "6333"))
            self.client = QdrantClient(host=host, port=port)
            where = f"{host}:{port}"

        log.info(f"Connected to Qdrant at {where}")

    def _collection_exists(self, collection_name: str) -> bool:
        collections = self.client.get_collections().collections
        return any(c.name == collection_name for c in collections)

    def _create_collection_if_needed(
        self,
        collection_name: str,
        recreate: bool = False,
        payload_indexes: list = None,
    ):
        if self._collection_exists(collection_name):
            if recreate:
                self.client.delete_collection(collection_name)
                log.info(f"Deleted existing: {collection_name}")
            else:
                return
        self.client.create_collection(
            collection_name=collection_name,
            vectors_config=VectorParams(
                size=self.EMBEDDING_DIM,
                distance=Distance.COSINE,
            ),
        )
        for field, schema in payload_indexes or []:
            self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field,
                field_schema=schema,
            )
        log.info(f"Created collection: {collection_name}")

    def create_collection(self, recreate: bool = False):
        """Create the reference_chunks collection (COSINE distance)."""
        self._create_collection_if_needed(
            self.COLLECTION_CHUNKS,
            recreate=recreate,
            payload_indexes=[
                ("material_id", "integer"),
                ("chunk_id", "integer"),
            ],
        )

    def index_chunks_batch(
        self,
        chunk_ids: List[int],
        embeddings: List[List[float]],
        metadatas: List[Dict[str, Any]],
    ) -> List[str]:
        """
        Index reference chunks. Metadata should include material_id and chunk_index.
        """
        if not (len(chunk_ids) == len(embeddings) == len(metadatas)):
            raise ValueError("chunk_ids, embeddings, and metadatas must have same length")
        self.create_collection()
        points = [
            PointStruct(
                id=chunk_id,
                vector=emb,
                payload={**meta, "chunk_id": chunk_id},
            )
            for chunk_id, emb, meta in zip(chunk_ids, embeddings, metadatas)
        ]
        self.client.upsert(collection_name=self.COLLECTION_CHUNKS, points=points)
        log.info(f"Indexed {len(points)} chunks to Qdrant")
        return [str(cid) for cid in chunk_ids]

    @staticmethod
    def _material_filter(material_ids: Optional[Sequence[int]]) -> Optional[Filter]:
        if not material_ids:
            return None
        return Filter(
            must=[FieldCondition(key="material_id", match=MatchAny(any=list(material_ids)))]
        )

    def count_chunks(self, material_ids: Optional[Sequence[int]] = None) -> int:
        if not self._collection_exists(self.COLLECTION_CHUNKS):
            return 0
        result = self.client.count(
            collection_name=self.COLLECTION_CHUNKS,
            count_filter=self._material_filter(material_ids),
            exact=True,
        )
        return result.count

    def search_chunks(
        self,
        query_vector: List[float],
        limit: int = 1,
        offset: int = 0,
        material_ids: Optional[Sequence[int]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Nearest chunks by cosine similarity, skipping the first `offset` hits.
        Returns [{chunk_id, score, metadata}], best first.
        """
        if not self._collection_exists(self.COLLECTION_CHUNKS):
            return []
        response = self.client.query_points(
            collection_name=self.COLLECTION_CHUNKS,
            query=query_vector,
            query_filter=self._material_filter(material_ids),
            limit=limit,
            offset=offset,
            with_payload=True,
        )
        results = []
        for point in response.points:
            payload = point.payload or {}
            results.append({
                "chunk_id": payload.get("chunk_id", point.id),
                "score": point.score,
                "metadata": payload,
            })
        return results

    def delete_by_material(self, material_id: int):
        """Delete all vectors for a reference material."""
        if not self._collection_exists(self.COLLECTION_CHUNKS):
            return
        self.client.delete(
            collection_name=self.COLLECTION_CHUNKS,
            points_selector=FilterSelector(
                filter=Filter(
                    must=[FieldCondition(key="material_id", match=MatchValue(value=material_id))]
                )
            ),
        )
        log.info(f"Deleted vectors for material {material_id} from {self.COLLECTION_CHUNKS}")

    def get_collection_info(self) -> Dict[str, Any]:
        try:
            info = self.client.get_collection(self.COLLECTION_CHUNKS)
            return {
                "collection_name": self.COLLECTION_CHUNKS,
                "vector_size": (
                    info.config.params.vectors.size
                    if info.config and info.config.params
                    else self.EMBEDDING_DIM
                ),
                "points_count": info.points_count,
                "status": info.status,
            }
        except Exception:
            return {"collection_name": self.COLLECTION_CHUNKS, "points_count": 0, "status": "missing"}


# Singleton instance
_qdrant_manager: Optional[QdrantManager] = None


def get_qdrant_manager() -> QdrantManager:
    """Get singleton Qdrant manager instance"""
    global _qdrant_manager
    if _qdrant_manager is None:
        from generation.config import get_config
        _qdrant_manager = QdrantManager(embedding_dim=get_config().embedding_dim)
    return _qdrant_manager
