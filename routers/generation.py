"""
Generation Router — /generation

Blueprint-driven exam assembly and standalone question synthesis.
Endpoints:
  POST /generation/generate-exam                 — assemble a draft exam from a blueprint
  GET  /generation/blueprints/{id}/shortage      — bank shortage report for a blueprint
  POST /generation/synthesize-questions          — run the 3-agent pipeline on supplied text
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import crud
from database.database import get_db
from embeddings.qdrant_manager import QdrantManager
from generation.completion_client import CompletionClient
from generation.errors import GenerationError
from generation.exam_assembler import ExamAssembler
from generation.retrieval_engine import RetrievalEngine
from generation.schemas import (
    GenerateExamRequest, GenerateExamResponse, GroundingText, ShortageReport,
    SynthesisSettings, SynthesizeQuestionsRequest, SynthesizeQuestionsResponse,
)
from generation.synthesis_pipeline import SynthesisPipeline
from routers.dependencies import get_client, get_vector_index

router = APIRouter(prefix="/generation", tags=["generation"])

# Use Python's standard logger so output appears in the uvicorn console
log = logging.getLogger("generation.pipeline")
logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)s  %(message)s")


def _http_error(e: GenerationError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


def _assembler(db: Session, client: CompletionClient, qdrant: Optional[QdrantManager]) -> ExamAssembler:
    retrieval = RetrievalEngine(db, client, qdrant=qdrant)
    return ExamAssembler(db, client, retrieval=retrieval)


# ─── Exam assembly ────────────────────────────────────────────────────────────

@router.post("/generate-exam", response_model=GenerateExamResponse)
async def generate_exam(
    request: GenerateExamRequest,
    db: Session = Depends(get_db),
    client: CompletionClient = Depends(get_client),
    qdrant: Optional[QdrantManager] = Depends(get_vector_index),
):
    """
    **Assemble a draft exam from a blueprint.**

    For every section and rule of the blueprint, bank questions are sampled
    (`use_existing`) or new questions are synthesized from reference material
    (`generate_novel`). The exam is created only when every rule is satisfied
    with its exact count.

    Errors:
    - 404: blueprint not found
    - 400: a `use_existing` rule has too few bank questions (detail names rule, needed, found)
    - 422: synthesis produced fewer questions than requested
    - 502: completion service failed (keys exhausted / unparseable output)
    """
    log.info(f"[GENERATE-EXAM] blueprint={request.blueprint_id} title='{request.title}'")
    assembler = _assembler(db, client, qdrant)
    try:
        result = await assembler.assemble(
            blueprint_id=request.blueprint_id,
            title=request.title,
            description=request.description,
            duration=request.duration,
            creator_id=request.creator_id,
            fill_shortage_with_synthesis=request.fill_shortage_with_synthesis,
        )
    except GenerationError as e:
        log.error(f"[GENERATE-EXAM] failed: {e}")
        raise _http_error(e)

    return GenerateExamResponse(
        exam_id=result.exam_id,
        total_marks=result.total_marks,
        question_count=result.question_count,
        synthesized_count=len(result.synthesized_question_ids),
        warnings=result.warnings,
    )


@router.get("/blueprints/{blueprint_id}/shortage", response_model=ShortageReport)
def check_blueprint_shortage(
    blueprint_id: int,
    db: Session = Depends(get_db),
    client: CompletionClient = Depends(get_client),
):
    """Report, per `use_existing` rule, how many bank questions match vs are required."""
    assembler = ExamAssembler(db, client)
    try:
        return assembler.check_shortage(blueprint_id)
    except GenerationError as e:
        raise _http_error(e)


# ─── Standalone synthesis ─────────────────────────────────────────────────────

@router.post("/synthesize-questions", response_model=SynthesizeQuestionsResponse)
async def synthesize_questions(
    request: SynthesizeQuestionsRequest,
    db: Session = Depends(get_db),
    client: CompletionClient = Depends(get_client),
):
    """
    **Run Extract → Craft → Review on caller-supplied reference text.**

    With `save_to_bank=true` the reviewed questions are stored as bank
    questions and linked to `tags` (created if missing).
    """
    log.info(
        f"[SYNTHESIZE] {request.count} × {request.question_type} on '{request.topic}' "
        f"({len(request.reference_text)} chars)"
    )
    settings = SynthesisSettings(
        question_type=request.question_type,
        count=request.count,
        difficulty=request.difficulty,
        style=request.style,
        languages=request.languages,
        marks=request.marks_per_question,
        negative_marks=request.negative_marks,
        topic=request.topic,
    )
    source = GroundingText(
        text=request.reference_text,
        source_title=request.source_title or request.topic,
    )

    pipeline = SynthesisPipeline(client)
    try:
        result = await pipeline.synthesize([source], settings)
    except GenerationError as e:
        log.error(f"[SYNTHESIZE] failed: {e}")
        raise _http_error(e)

    saved_ids = []
    if request.save_to_bank:
        tags = crud.get_or_create_tags(db, request.tags)
        for draft in result.questions:
            saved_ids.append(crud.create_question(db, draft.to_question_fields(), tags=tags).id)
        log.info(f"[SYNTHESIZE] saved {len(saved_ids)} questions to bank (tags={request.tags})")

    return SynthesizeQuestionsResponse(
        questions=result.questions,
        stats=result.stats,
        saved_question_ids=saved_ids,
    )
