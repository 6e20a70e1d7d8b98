"""
Pydantic schemas for the exam synthesis pipeline.

Internal:   Concept → QuestionDraft (+ Citation, ReviewResult) → SynthesisResult
API:        GenerateExamRequest / SynthesizeQuestionsRequest and their responses
"""

from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, RootModel


QuestionType = Literal["mcq_single", "mcq_multiple", "true_false", "short_answer", "fill_blank"]

DEFAULT_LANGUAGE = "en"


# ─── Multilingual text ────────────────────────────────────────────────────────

class LocalizedText(RootModel[Dict[str, str]]):
    """Language code → string, e.g. {"en": "...", "pa": "..."}."""
    root: Dict[str, str] = Field(default_factory=dict)

    def get(self, lang: str = DEFAULT_LANGUAGE, fallback: bool = True) -> str:
        """Text in `lang`, else the default language, else any language present."""
        if lang in self.root:
            return self.root[lang]
        if not fallback:
            return ""
        if DEFAULT_LANGUAGE in self.root:
            return self.root[DEFAULT_LANGUAGE]
        return next(iter(self.root.values()), "")

    @property
    def languages(self) -> List[str]:
        return list(self.root.keys())

    @classmethod
    def of(cls, text: str, lang: str = DEFAULT_LANGUAGE) -> "LocalizedText":
        return cls({lang: text})


# ─── Internal pipeline types ───────────────────────────────────────────────────

class GroundingText(BaseModel):
    """Output of retrieval: the text a question is grounded in."""
    text: str
    source_title: str
    chunk_id: Optional[int] = None
    score: Optional[float] = None
    grounded: bool = True


class Concept(BaseModel):
    """Agent 1 output: one testable claim and the verbatim excerpt supporting it."""
    claim: str
    excerpt: str


class Citation(BaseModel):
    excerpt: str
    concept: str
    source_title: Optional[str] = None
    chunk_ids: List[int] = Field(default_factory=list)
    grounded: bool = True


class QuestionOption(BaseModel):
    """One choice option. id is a display label ("A".."D")."""
    id: str
    text: LocalizedText


class ReviewResult(BaseModel):
    score: float = 5
    feedback: str = ""
    is_correct: Optional[bool] = None
    suggested_difficulty: Optional[int] = None
    issues: List[str] = Field(default_factory=list)
    parsed: bool = True


class QuestionDraft(BaseModel):
    """
    A synthesized question before persistence.
    correct_answer holds option contents (English text), never labels.
    """
    text: LocalizedText
    type: QuestionType
    options: List[QuestionOption] = Field(default_factory=list)
    correct_answer: List[str]
    explanation: LocalizedText = Field(default_factory=LocalizedText)
    difficulty: int = Field(3, ge=1, le=5)
    marks: float = 1
    negative_marks: Optional[float] = None
    citation: Citation
    review: Optional[ReviewResult] = None

    def to_question_fields(self) -> Dict[str, Any]:
        """Column values for database.models.Question."""
        return {
            "type": self.type,
            "text": self.text.root,
            "options": [o.model_dump(mode="json") for o in self.options] or None,
            "correct_answer": list(self.correct_answer),
            "explanation": self.explanation.root or None,
            "marks": self.marks,
            "negative_marks": self.negative_marks,
            "difficulty": self.difficulty,
            "is_ai_generated": True,
            "citation": self.citation.model_dump(mode="json"),
            "review_score": self.review.score if self.review else None,
            "review_feedback": self.review.feedback if self.review else None,
        }


class SynthesisSettings(BaseModel):
    """What to synthesize for one rule or one standalone request."""
    question_type: QuestionType = "mcq_single"
    count: int = Field(..., ge=1)
    difficulty: int = Field(3, ge=1, le=5)
    style: str = "general"
    languages: List[str] = Field(default_factory=lambda: [DEFAULT_LANGUAGE])
    marks: float = 1
    negative_marks: Optional[float] = None
    topic: str = "General Knowledge"


class PipelineStats(BaseModel):
    concepts_extracted: int = 0
    questions_generated: int = 0
    average_review_score: Optional[float] = None
    elapsed_seconds: float = 0.0


class SynthesisResult(BaseModel):
    questions: List[QuestionDraft] = Field(default_factory=list)
    stats: PipelineStats = Field(default_factory=PipelineStats)


# ─── API: exam assembly ───────────────────────────────────────────────────────

class GenerateExamRequest(BaseModel):
    blueprint_id: int = Field(..., gt=0)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    duration: int = Field(..., gt=0, description="Minutes")
    creator_id: Optional[str] = None
    fill_shortage_with_synthesis: bool = Field(
        False, description="Synthesize the missing remainder of short use_existing rules"
    )


class GenerateExamResponse(BaseModel):
    exam_id: int
    total_marks: float
    question_count: int
    synthesized_count: int = 0
    warnings: List[str] = Field(default_factory=list)


class RuleShortage(BaseModel):
    rule_id: int
    section: str
    question_type: str
    tags: List[str] = Field(default_factory=list)
    difficulty: Optional[int] = None
    required: int
    found: int
    missing: int


class ShortageReport(BaseModel):
    blueprint_id: int
    has_shortage: bool
    total_required: int
    total_missing: int
    rules: List[RuleShortage] = Field(default_factory=list)


# ─── API: standalone synthesis ────────────────────────────────────────────────

class SynthesizeQuestionsRequest(BaseModel):
    topic: str = Field("General Knowledge", min_length=1)
    reference_text: str = Field(..., min_length=50)
    source_title: Optional[str] = None
    count: int = Field(5, ge=1, le=20)
    question_type: QuestionType = "mcq_single"
    difficulty: int = Field(3, ge=1, le=5)
    style: str = "general"
    languages: List[str] = Field(default_factory=lambda: [DEFAULT_LANGUAGE])
    marks_per_question: float = Field(1, gt=0)
    negative_marks: Optional[float] = Field(None, ge=0)
    save_to_bank: bool = False
    tags: List[str] = Field(default_factory=list)


class SynthesizeQuestionsResponse(BaseModel):
    questions: List[QuestionDraft]
    stats: PipelineStats
    saved_question_ids: List[int] = Field(default_factory=list)
