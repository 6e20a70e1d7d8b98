"""
SQLAlchemy models for the exam synthesis core

Reference Material → Document Chunk      (grounding corpus, embeddings as JSON)
Exam Blueprint → Section → Rule          (read-only input to assembly)
Question (+ tags)                        (bank entries and synthesized items)
Exam → Exam Section → Section Question   (assembled, gradeable exam)

Column types are kept portable (JSON instead of JSONB/vector) so the same
models run on PostgreSQL and on SQLite.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, DateTime, Text, Float, JSON, Table,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from database.database import Base


class GenerationMethod(str, enum.Enum):
    """How a blueprint rule is satisfied."""
    USE_EXISTING = "use_existing"
    GENERATE_NOVEL = "generate_novel"


class ExamStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


# ==========================================
# ASSOCIATION TABLES
# ==========================================

question_tags = Table(
    "question_tags",
    Base.metadata,
    Column("question_id", Integer, ForeignKey("questions.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)

rule_tags = Table(
    "blueprint_rule_tags",
    Base.metadata,
    Column("rule_id", Integer, ForeignKey("blueprint_rules.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)

blueprint_materials = Table(
    "blueprint_materials",
    Base.metadata,
    Column("blueprint_id", Integer, ForeignKey("exam_blueprints.id", ondelete="CASCADE"), primary_key=True),
    Column("material_id", Integer, ForeignKey("reference_materials.id", ondelete="CASCADE"), primary_key=True),
)


# ==========================================
# GROUNDING CORPUS
# ==========================================

class ReferenceMaterial(Base):
    """
    A source document (book, notes) uploaded as plain text.
    Decomposed into DocumentChunk rows; deleting the material deletes its chunks.
    """
    __tablename__ = "reference_materials"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=True)
    text_content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    chunks = relationship(
        "DocumentChunk",
        back_populates="material",
        cascade="all, delete-orphan",
        order_by="DocumentChunk.chunk_index",
    )

    def __repr__(self):
        return f"<ReferenceMaterial(id={self.id}, title='{self.title}')>"


class DocumentChunk(Base):
    """
    One retrievable block of a reference material with its embedding.
    Immutable once created.
    """
    __tablename__ = "document_chunks"

    id = Column(Integer, primary_key=True, index=True)
    material_id = Column(Integer, ForeignKey("reference_materials.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)  # Order of chunk within material

    text = Column(Text, nullable=False)
    embedding_vector = Column(JSON, nullable=False)  # fixed-dim float list
    embedding_model = Column(String(100), nullable=True)  # text-embedding-3-small
    embedding_dim = Column(Integer, nullable=True)  # 1536

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    material = relationship("ReferenceMaterial", back_populates="chunks")

    def __repr__(self):
        return f"<DocumentChunk(id={self.id}, material_id={self.material_id}, chunk_index={self.chunk_index})>"


# ==========================================
# TAGS
# ==========================================

class Tag(Base):
    """Topic tag shared by bank questions and blueprint rules (e.g. 'algebra')."""
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)

    def __repr__(self):
        return f"<Tag(id={self.id}, name='{self.name}')>"


# ==========================================
# BLUEPRINTS (read-only to assembly)
# ==========================================

class ExamBlueprint(Base):
    """
    Reusable exam template. Sections are ordered by `order`.
    materials: optional reference materials that scope retrieval for novel rules.
    languages: language codes synthesized questions are written in.
    """
    __tablename__ = "exam_blueprints"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    languages = Column(JSON, default=lambda: ["en"], nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    sections = relationship(
        "BlueprintSection",
        back_populates="blueprint",
        cascade="all, delete-orphan",
        order_by="BlueprintSection.order",
    )
    materials = relationship("ReferenceMaterial", secondary=blueprint_materials)

    def __repr__(self):
        return f"<ExamBlueprint(id={self.id}, name='{self.name}')>"


class BlueprintSection(Base):
    __tablename__ = "blueprint_sections"

    id = Column(Integer, primary_key=True, index=True)
    blueprint_id = Column(Integer, ForeignKey("exam_blueprints.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    order = Column(Integer, nullable=False)

    blueprint = relationship("ExamBlueprint", back_populates="sections")
    rules = relationship(
        "BlueprintRule",
        back_populates="section",
        cascade="all, delete-orphan",
        order_by="BlueprintRule.order",
    )


class BlueprintRule(Base):
    """
    One line item of a section: how many questions of which kind, and whether
    they come from the bank (use_existing) or are synthesized (generate_novel).
    difficulty: 1-5, NULL means any.
    """
    __tablename__ = "blueprint_rules"

    id = Column(Integer, primary_key=True, index=True)
    section_id = Column(Integer, ForeignKey("blueprint_sections.id", ondelete="CASCADE"), nullable=False, index=True)
    order = Column(Integer, nullable=False, default=0)
    question_type = Column(String(20), nullable=False)  # mcq_single, mcq_multiple, true_false, short_answer, fill_blank
    number_of_questions = Column(Integer, nullable=False)
    difficulty = Column(Integer, nullable=True)
    marks_per_question = Column(Float, nullable=False, default=1)
    negative_marks = Column(Float, nullable=True)
    generation_method = Column(String(20), nullable=False, default=GenerationMethod.USE_EXISTING.value)
    style = Column(String(30), nullable=False, default="general")

    section = relationship("BlueprintSection", back_populates="rules")
    topic_tags = relationship("Tag", secondary=rule_tags, order_by="Tag.name")

    def __repr__(self):
        return (
            f"<BlueprintRule(id={self.id}, type='{self.question_type}', "
            f"count={self.number_of_questions}, method='{self.generation_method}')>"
        )


# ==========================================
# QUESTION BANK
# ==========================================

class Question(Base):
    """
    Bank question. Created once (manual entry or synthesis), then reused through
    SectionQuestion links; never duplicated for reuse.

    text / explanation: {"en": "...", "pa": "..."}
    options: [{"id": "A", "text": {"en": "..."}}, ...]
    correct_answer: list of option contents (or the short answer)
    citation: {"excerpt", "concept", "source_title", "chunk_ids", "grounded"}
    """
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(20), nullable=False, index=True)
    text = Column(JSON, nullable=False)
    options = Column(JSON, nullable=True)
    correct_answer = Column(JSON, nullable=False)
    explanation = Column(JSON, nullable=True)
    marks = Column(Float, nullable=False, default=1)
    negative_marks = Column(Float, nullable=True)
    difficulty = Column(Integer, nullable=True, index=True)  # 1-5

    is_ai_generated = Column(Boolean, default=False, nullable=False)
    citation = Column(JSON, nullable=True)
    review_score = Column(Float, nullable=True)
    review_feedback = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    tags = relationship("Tag", secondary=question_tags, backref="questions")

    def __repr__(self):
        return f"<Question(id={self.id}, type='{self.type}', difficulty={self.difficulty})>"


# ==========================================
# ASSEMBLED EXAMS
# ==========================================

class Exam(Base):
    """
    Assembled exam. total_marks is computed once at creation from the links.
    """
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(JSON, nullable=True)  # {"en": "...", ...}
    duration = Column(Integer, nullable=False)  # minutes
    total_marks = Column(Float, nullable=False)
    status = Column(String(20), default=ExamStatus.DRAFT.value, nullable=False)
    created_by = Column(String(64), nullable=True, index=True)
    blueprint_id = Column(Integer, ForeignKey("exam_blueprints.id", ondelete="SET NULL"), nullable=True, index=True)
    expected_questions = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    sections = relationship(
        "ExamSection",
        back_populates="exam",
        cascade="all, delete-orphan",
        order_by="ExamSection.order",
    )

    def __repr__(self):
        return f"<Exam(id={self.id}, title='{self.title}', total_marks={self.total_marks})>"


class ExamSection(Base):
    __tablename__ = "exam_sections"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    order = Column(Integer, nullable=False)

    exam = relationship("Exam", back_populates="sections")
    questions = relationship(
        "SectionQuestion",
        back_populates="section",
        cascade="all, delete-orphan",
        order_by="SectionQuestion.order",
    )


class SectionQuestion(Base):
    """
    Many-to-many join between exam sections and bank questions.
    order is dense and 1-based within a section.
    """
    __tablename__ = "section_questions"

    id = Column(Integer, primary_key=True, index=True)
    section_id = Column(Integer, ForeignKey("exam_sections.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True)
    marks = Column(Float, nullable=False)
    negative_marks = Column(Float, nullable=True)
    order = Column(Integer, nullable=False)

    section = relationship("ExamSection", back_populates="questions")
    question = relationship("Question")

    def __repr__(self):
        return f"<SectionQuestion(section_id={self.section_id}, question_id={self.question_id}, order={self.order})>"
