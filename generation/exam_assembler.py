"""
Exam Assembly Engine

Turns an ExamBlueprint into a persisted draft Exam:

  for each section (blueprint order):
      for each rule (declared order):
          use_existing   → random sample of matching bank questions
          generate_novel → retrieve grounding text + run the synthesis pipeline,
                           persisting every new Question immediately
  then create Exam + ExamSections + SectionQuestion links in one transaction

Every rule is satisfied with exactly its requested count or the run fails.
Synthesized questions persisted before a later failure are NOT removed.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from database import crud
from database.models import BlueprintRule, BlueprintSection, ExamBlueprint, ExamStatus, GenerationMethod
from generation.completion_client import CompletionClient
from generation.config import PipelineConfig
from generation.errors import BlueprintNotFoundError, GenerationError, InsufficientPoolError, InvalidRuleError
from generation.retrieval_engine import RetrievalEngine, build_topic_phrase
from generation.schemas import RuleShortage, ShortageReport, SynthesisSettings, DEFAULT_LANGUAGE
from generation.synthesis_pipeline import SynthesisPipeline

log = logging.getLogger("generation.pipeline")


@dataclass
class AssemblyResult:
    exam_id: int
    total_marks: float
    question_count: int
    synthesized_question_ids: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _tag_names(rule: BlueprintRule) -> List[str]:
    return [t.name for t in rule.topic_tags]


class ExamAssembler:
    """
    assemble(blueprint_id, ...) → AssemblyResult (exam_id, totals, warnings)
    check_shortage(blueprint_id) → ShortageReport

    rng drives bank sampling; pass random.Random(seed) for repeatable runs.
    """

    def __init__(
        self,
        db: Session,
        client: CompletionClient,
        config: Optional[PipelineConfig] = None,
        retrieval: Optional[RetrievalEngine] = None,
        pipeline: Optional[SynthesisPipeline] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.client = client
        self.config = config or client.config
        self._retrieval = retrieval
        self.pipeline = pipeline or SynthesisPipeline(client, self.config)
        self.rng = rng or random.Random()

    @property
    def retrieval(self) -> RetrievalEngine:
        # built on first synthesis so bank-only work never opens a vector index
        if self._retrieval is None:
            self._retrieval = RetrievalEngine(self.db, self.client, self.config)
        return self._retrieval

    def _load_blueprint(self, blueprint_id: int) -> ExamBlueprint:
        blueprint = crud.get_blueprint_complete(self.db, blueprint_id)
        if blueprint is None:
            raise BlueprintNotFoundError(blueprint_id)
        return blueprint

    # ─── Rule handlers ────────────────────────────────────────────────────────

    def _settings_for_rule(
        self,
        blueprint: ExamBlueprint,
        section: BlueprintSection,
        rule: BlueprintRule,
        count: int,
    ) -> SynthesisSettings:
        tag_names = _tag_names(rule)
        try:
            return SynthesisSettings(
                question_type=rule.question_type,
                count=count,
                difficulty=rule.difficulty or 3,
                style=rule.style or "general",
                languages=blueprint.languages or [DEFAULT_LANGUAGE],
                marks=rule.marks_per_question,
                negative_marks=rule.negative_marks,
                topic=", ".join(tag_names) or "General Knowledge",
            )
        except ValidationError as e:
            fields = ", ".join(
                f"{'.'.join(str(p) for p in err['loc'])}={err.get('input')!r}" for err in e.errors()
            )
            raise InvalidRuleError(rule.id, section.name, f"invalid {fields}") from e

    async def _synthesize_for_rule(
        self,
        blueprint: ExamBlueprint,
        section: BlueprintSection,
        rule: BlueprintRule,
        count: int,
        warnings: List[str],
    ) -> List[int]:
        """Retrieve one grounding text per question, synthesize, persist. Returns new ids."""
        if count <= 0:
            return []
        # checked before any retrieval or completion call is spent
        settings = self._settings_for_rule(blueprint, section, rule, count)

        tag_names = _tag_names(rule)
        phrase = build_topic_phrase(rule.question_type, tag_names, rule.difficulty)
        material_ids = [m.id for m in blueprint.materials]

        sources = []
        for offset in range(count):
            sources.append(
                await self.retrieval.retrieve_grounding_text(phrase, offset, material_ids)
            )
        if not any(s.grounded for s in sources):
            warnings.append(
                f"Rule {rule.id} ({rule.question_type}, {', '.join(tag_names) or 'General Knowledge'}): "
                f"no reference material found; questions are not grounded in source text"
            )

        result = await self.pipeline.synthesize(sources, settings)

        new_ids = []
        for draft in result.questions:
            question = crud.create_question(self.db, draft.to_question_fields(), tags=rule.topic_tags)
            new_ids.append(question.id)
        log.info(
            f"[ASSEMBLE] rule {rule.id}: persisted {len(new_ids)} synthesized questions "
            f"(avg review {result.stats.average_review_score})"
        )
        return new_ids

    def _sample_bank(self, rule: BlueprintRule, exclude_ids: Sequence[int]) -> List[int]:
        """All bank matches for the rule, minus questions already used in this run."""
        return crud.find_bank_question_ids(
            self.db,
            question_type=rule.question_type,
            tag_ids=[t.id for t in rule.topic_tags],
            difficulty=rule.difficulty,
            exclude_ids=exclude_ids,
        )

    async def _resolve_rule(
        self,
        blueprint: ExamBlueprint,
        section: BlueprintSection,
        rule: BlueprintRule,
        used_ids: Sequence[int],
        fill_shortage_with_synthesis: bool,
        warnings: List[str],
    ) -> Tuple[List[int], List[int]]:
        """(question ids for the rule in link order, the subset synthesized in this run)"""
        needed = rule.number_of_questions

        if rule.generation_method == GenerationMethod.GENERATE_NOVEL.value:
            generated = await self._synthesize_for_rule(blueprint, section, rule, needed, warnings)
            return generated, generated

        matches = self._sample_bank(rule, used_ids)
        if len(matches) >= needed:
            return self.rng.sample(matches, needed), []

        if not fill_shortage_with_synthesis:
            raise InsufficientPoolError(
                question_type=rule.question_type,
                tag_names=_tag_names(rule),
                needed=needed,
                found=len(matches),
                section=section.name,
                rule_id=rule.id,
            )

        missing = needed - len(matches)
        log.info(f"[ASSEMBLE] rule {rule.id}: bank has {len(matches)}/{needed}, synthesizing {missing}")
        chosen = list(matches)
        self.rng.shuffle(chosen)
        generated = await self._synthesize_for_rule(blueprint, section, rule, missing, warnings)
        return chosen + generated, generated

    # ─── Main entry ───────────────────────────────────────────────────────────

    async def assemble(
        self,
        blueprint_id: int,
        title: str,
        description: Optional[str] = None,
        duration: int = 60,
        creator_id: Optional[str] = None,
        fill_shortage_with_synthesis: bool = False,
    ) -> AssemblyResult:
        """
        Build and persist a draft exam from a blueprint.

        Raises:
            BlueprintNotFoundError
            InsufficientPoolError: a use_existing rule is short (names rule, needed, found)
            InvalidRuleError: a rule to synthesize has an unsupported type or difficulty
            SynthesisShortfallError / MalformedResponseError / CredentialsExhaustedError:
                from synthesis, unchanged apart from rule_id / section being set
        """
        blueprint = self._load_blueprint(blueprint_id)
        log.info(f"[ASSEMBLE] blueprint {blueprint.id} '{blueprint.name}': {len(blueprint.sections)} sections")

        used_ids: List[int] = []
        synthesized_ids: List[int] = []
        warnings: List[str] = []
        sections_to_create = []
        expected_questions = 0

        for section in blueprint.sections:
            links = []
            section_marks = 0.0

            for rule in section.rules:
                expected_questions += rule.number_of_questions
                try:
                    chosen, generated = await self._resolve_rule(
                        blueprint, section, rule, used_ids, fill_shortage_with_synthesis, warnings
                    )
                except GenerationError as e:
                    # same error object, tagged with the rule it failed on
                    if e.rule_id is None:
                        e.rule_id, e.section = rule.id, section.name
                    log.error(f"[ASSEMBLE] rule {rule.id} in '{section.name}' failed: {e}")
                    raise
                synthesized_ids.extend(generated)

                for question_id in chosen:
                    links.append({
                        "question_id": question_id,
                        "marks": rule.marks_per_question,
                        "negative_marks": rule.negative_marks,
                    })
                    section_marks += rule.marks_per_question
                used_ids.extend(chosen)
                log.info(
                    f"[ASSEMBLE] '{section.name}' rule {rule.id}: {len(chosen)} × {rule.question_type} "
                    f"({rule.generation_method})"
                )

            sections_to_create.append({"name": section.name, "order": section.order, "links": links})
            log.info(f"[ASSEMBLE] section '{section.name}': {len(links)} questions, {section_marks} marks")

        total_marks = sum(link["marks"] for s in sections_to_create for link in s["links"])
        exam_fields = {
            "title": title,
            "description": {DEFAULT_LANGUAGE: description} if description else None,
            "duration": duration,
            "total_marks": total_marks,
            "status": ExamStatus.DRAFT.value,
            "created_by": creator_id,
            "blueprint_id": blueprint.id,
            "expected_questions": expected_questions,
        }
        exam = crud.create_exam_with_sections(self.db, exam_fields, sections_to_create)

        for warning in warnings:
            log.warning(f"[ASSEMBLE] exam {exam.id}: {warning}")
        log.info(
            f"[ASSEMBLE] exam {exam.id} created: {len(used_ids)} questions, "
            f"{total_marks} marks, {len(synthesized_ids)} synthesized"
        )
        return AssemblyResult(
            exam_id=exam.id,
            total_marks=total_marks,
            question_count=len(used_ids),
            synthesized_question_ids=synthesized_ids,
            warnings=warnings,
        )

    # ─── Shortage check ───────────────────────────────────────────────────────

    def check_shortage(self, blueprint_id: int) -> ShortageReport:
        """Per use_existing rule: how many bank questions match vs how many are needed."""
        blueprint = self._load_blueprint(blueprint_id)
        rules = []
        for section in blueprint.sections:
            for rule in section.rules:
                if rule.generation_method == GenerationMethod.GENERATE_NOVEL.value:
                    continue
                found = len(self._sample_bank(rule, ()))
                rules.append(RuleShortage(
                    rule_id=rule.id,
                    section=section.name,
                    question_type=rule.question_type,
                    tags=_tag_names(rule),
                    difficulty=rule.difficulty,
                    required=rule.number_of_questions,
                    found=found,
                    missing=max(0, rule.number_of_questions - found),
                ))

        total_missing = sum(r.missing for r in rules)
        return ShortageReport(
            blueprint_id=blueprint.id,
            has_shortage=total_missing > 0,
            total_required=sum(r.required for r in rules),
            total_missing=total_missing,
            rules=rules,
        )
