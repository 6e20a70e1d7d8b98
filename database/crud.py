"""
CRUD operations for the exam synthesis core
All database operations go through these functions
"""

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from database import models


# ==========================================
# REFERENCE MATERIAL CRUD
# ==========================================

def create_reference_material(
    db: Session,
    title: str,
    text_content: str,
    author: Optional[str] = None,
) -> models.ReferenceMaterial:
    """Create a reference material row (chunks are added separately)"""
    db_material = models.ReferenceMaterial(
        title=title,
        author=author,
        text_content=text_content,
    )
    db.add(db_material)
    db.commit()
    db.refresh(db_material)
    return db_material


def add_document_chunks(
    db: Session,
    material_id: int,
    chunks: Sequence[Tuple[str, List[float]]],
    embedding_model: Optional[str] = None,
) -> List[models.DocumentChunk]:
    """Bulk insert (text, embedding) pairs for a material, in order"""
    db_chunks = []
    for index, (text, vector) in enumerate(chunks):
        db_chunks.append(models.DocumentChunk(
            material_id=material_id,
            chunk_index=index,
            text=text,
            embedding_vector=list(vector),
            embedding_model=embedding_model,
            embedding_dim=len(vector),
        ))
    db.add_all(db_chunks)
    db.commit()
    for chunk in db_chunks:
        db.refresh(chunk)
    return db_chunks


def get_reference_material(db: Session, material_id: int) -> Optional[models.ReferenceMaterial]:
    """Get reference material by ID"""
    return db.query(models.ReferenceMaterial).filter(
        models.ReferenceMaterial.id == material_id
    ).first()


def get_reference_materials_with_counts(
    db: Session, skip: int = 0, limit: int = 100
) -> List[Tuple[models.ReferenceMaterial, int]]:
    """List materials newest first, each with its chunk count"""
    chunk_count = func.count(models.DocumentChunk.id)
    return (
        db.query(models.ReferenceMaterial, chunk_count)
        .outerjoin(models.DocumentChunk, models.DocumentChunk.material_id == models.ReferenceMaterial.id)
        .group_by(models.ReferenceMaterial.id)
        .order_by(models.ReferenceMaterial.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def delete_reference_material(db: Session, material_id: int) -> bool:
    """Delete a material (cascades to its chunks)"""
    db_material = get_reference_material(db, material_id)
    if not db_material:
        return False

    db.delete(db_material)
    db.commit()
    return True


def get_chunks(
    db: Session, material_ids: Optional[Iterable[int]] = None
) -> List[models.DocumentChunk]:
    """All chunks, or only those of the given materials"""
    query = db.query(models.DocumentChunk)
    if material_ids:
        query = query.filter(models.DocumentChunk.material_id.in_(list(material_ids)))
    return query.order_by(models.DocumentChunk.id).all()


def get_chunks_by_ids(db: Session, chunk_ids: Iterable[int]) -> Dict[int, models.DocumentChunk]:
    ids = list(chunk_ids)
    if not ids:
        return {}
    rows = db.query(models.DocumentChunk).options(
        selectinload(models.DocumentChunk.material)
    ).filter(models.DocumentChunk.id.in_(ids)).all()
    return {row.id: row for row in rows}


# ==========================================
# TAG CRUD
# ==========================================

def get_tags_by_names(db: Session, names: Iterable[str]) -> List[models.Tag]:
    return db.query(models.Tag).filter(models.Tag.name.in_(list(names))).all()


def get_or_create_tags(db: Session, names: Iterable[str]) -> List[models.Tag]:
    """Resolve tag names, creating missing ones (not committed)"""
    wanted = []
    for name in names:
        clean = name.strip()
        if clean and clean not in wanted:
            wanted.append(clean)
    if not wanted:
        return []

    existing = {tag.name: tag for tag in get_tags_by_names(db, wanted)}
    tags = []
    for name in wanted:
        tag = existing.get(name)
        if tag is None:
            tag = models.Tag(name=name)
            db.add(tag)
        tags.append(tag)
    db.flush()
    return tags


# ==========================================
# BLUEPRINT READS
# ==========================================

def get_blueprint_complete(db: Session, blueprint_id: int) -> Optional[models.ExamBlueprint]:
    """Get blueprint with sections, rules, rule tags and scoped materials loaded"""
    return db.query(models.ExamBlueprint).options(
        selectinload(models.ExamBlueprint.sections)
        .selectinload(models.BlueprintSection.rules)
        .selectinload(models.BlueprintRule.topic_tags),
        selectinload(models.ExamBlueprint.materials),
    ).filter(models.ExamBlueprint.id == blueprint_id).first()


# ==========================================
# QUESTION BANK CRUD
# ==========================================

def _bank_query(
    db: Session,
    question_type: str,
    tag_ids: Sequence[int],
    difficulty: Optional[int],
    exclude_ids: Iterable[int] = (),
):
    query = db.query(models.Question.id).filter(models.Question.type == question_type)
    if tag_ids:
        # any of the rule's tags matches
        query = query.filter(models.Question.tags.any(models.Tag.id.in_(list(tag_ids))))
    if difficulty:
        query = query.filter(models.Question.difficulty == difficulty)
    excluded = list(exclude_ids)
    if excluded:
        query = query.filter(models.Question.id.notin_(excluded))
    return query


def find_bank_question_ids(
    db: Session,
    question_type: str,
    tag_ids: Sequence[int] = (),
    difficulty: Optional[int] = None,
    exclude_ids: Iterable[int] = (),
) -> List[int]:
    """IDs of bank questions matching {type, any tag, difficulty}, ascending"""
    query = _bank_query(db, question_type, tag_ids, difficulty, exclude_ids)
    return [row[0] for row in query.order_by(models.Question.id).all()]


def get_questions_by_ids(db: Session, question_ids: Sequence[int]) -> List[models.Question]:
    """Load questions, returned in the order of question_ids"""
    if not question_ids:
        return []
    rows = db.query(models.Question).options(
        selectinload(models.Question.tags)
    ).filter(models.Question.id.in_(list(question_ids))).all()
    by_id = {q.id: q for q in rows}
    return [by_id[qid] for qid in question_ids if qid in by_id]


def create_question(
    db: Session,
    data: dict,
    tags: Sequence[models.Tag] = (),
) -> models.Question:
    """
    Persist one question immediately (own commit).
    data keys follow the Question columns.
    """
    db_question = models.Question(**data)
    if tags:
        db_question.tags = list(tags)
    db.add(db_question)
    db.commit()
    db.refresh(db_question)
    return db_question


# ==========================================
# EXAM CRUD
# ==========================================

def create_exam_with_sections(
    db: Session,
    exam_fields: dict,
    sections: Sequence[dict],
) -> models.Exam:
    """
    Create Exam, its sections and section-question links in one transaction.

    sections: [{"name", "order", "links": [{"question_id", "marks", "negative_marks"}]}]
    Link order is assigned here, 1-based per section, in list order.
    Rolls back everything on failure.
    """
    try:
        db_exam = models.Exam(**exam_fields)
        db.add(db_exam)
        db.flush()

        for section in sections:
            db_section = models.ExamSection(
                exam_id=db_exam.id,
                name=section["name"],
                order=section["order"],
            )
            db.add(db_section)
            db.flush()

            for position, link in enumerate(section["links"], start=1):
                db.add(models.SectionQuestion(
                    section_id=db_section.id,
                    question_id=link["question_id"],
                    marks=link["marks"],
                    negative_marks=link.get("negative_marks"),
                    order=position,
                ))

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_exam)
    return db_exam


def get_exam_complete(db: Session, exam_id: int) -> Optional[models.Exam]:
    """Get exam with sections and links loaded"""
    return db.query(models.Exam).options(
        selectinload(models.Exam.sections).selectinload(models.ExamSection.questions)
    ).filter(models.Exam.id == exam_id).first()
