"""
Reference Materials Router — /reference-materials

Plain-text grounding corpus for question synthesis.
Endpoints:
  POST   /reference-materials        — upload text, chunk + embed + store
  GET    /reference-materials        — list materials with chunk counts
  DELETE /reference-materials/{id}   — delete material, chunks and index points
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from database import crud
from database.database import get_db
from database.schemas import ReferenceMaterialCreate, ReferenceMaterialResponse
from embeddings.generator import EmbeddingGenerator
from embeddings.qdrant_manager import QdrantManager
from generation.completion_client import CompletionClient
from generation.errors import GenerationError
from ingestion.reference_ingest import delete_reference_material, ingest_reference_material
from routers.dependencies import get_client, get_vector_index

router = APIRouter(prefix="/reference-materials", tags=["reference-materials"])

log = logging.getLogger("generation.retrieval")


@router.post("", response_model=ReferenceMaterialResponse, status_code=status.HTTP_201_CREATED)
async def upload_reference_material(
    material: ReferenceMaterialCreate,
    db: Session = Depends(get_db),
    client: CompletionClient = Depends(get_client),
    qdrant: Optional[QdrantManager] = Depends(get_vector_index),
):
    """Store a reference material; blocks of more than 50 characters become chunks."""
    try:
        db_material, chunks = await ingest_reference_material(
            db,
            title=material.title,
            text_content=material.text_content,
            author=material.author,
            embedder=EmbeddingGenerator(client),
            qdrant=qdrant,
        )
    except GenerationError as e:
        log.error(f"[INGEST] '{material.title}' failed: {e}")
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())

    return ReferenceMaterialResponse(
        id=db_material.id,
        title=db_material.title,
        author=db_material.author,
        chunk_count=len(chunks),
        created_at=db_material.created_at,
    )


@router.get("", response_model=List[ReferenceMaterialResponse])
def list_reference_materials(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    rows = crud.get_reference_materials_with_counts(db, skip=skip, limit=limit)
    return [
        ReferenceMaterialResponse(
            id=m.id, title=m.title, author=m.author, chunk_count=count, created_at=m.created_at
        )
        for m, count in rows
    ]


@router.delete("/{material_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_reference_material(
    material_id: int,
    db: Session = Depends(get_db),
    qdrant: Optional[QdrantManager] = Depends(get_vector_index),
):
    if not delete_reference_material(db, material_id, qdrant=qdrant):
        raise HTTPException(status_code=404, detail=f"Reference material {material_id} not found")
