import random

import pytest
from sqlalchemy.exc import IntegrityError

from database import crud, models
from generation.errors import (
    BlueprintNotFoundError, InsufficientPoolError, InvalidRuleError, MalformedResponseError, SynthesisShortfallError,
)
from generation.exam_assembler import ExamAssembler
from generation.synthesis_pipeline import SynthesisPipeline
from tests.fixtures.mock_openai import hash_embed
from tests.fixtures.sample_data import (
    ALGEBRA_TEXT, PHOTOSYNTHESIS_TEXT, make_bank_questions, make_blueprint,
)


def use_existing(count, question_type="mcq_single", tags=("algebra",), **extra):
    rule = {
        "question_type": question_type,
        "number_of_questions": count,
        "generation_method": "use_existing",
        "tags": list(tags),
    }
    rule.update(extra)
    return rule


def generate_novel(count, question_type="true_false", tags=("photosynthesis",), **extra):
    rule = use_existing(count, question_type=question_type, tags=tags, **extra)
    rule["generation_method"] = "generate_novel"
    return rule


def store_material(db, title, text):
    material = crud.create_reference_material(db, title=title, text_content=text)
    blocks = [b for b in text.split("\n\n") if len(b) > 50]
    crud.add_document_chunks(db, material.id, [(b, hash_embed(b)) for b in blocks], embedding_model="hash")
    return material


@pytest.fixture
def assembler(db, client, config, rng, fake_sleep):
    pipeline = SynthesisPipeline(client, config, sleep=fake_sleep)
    return ExamAssembler(db, client, config, pipeline=pipeline, rng=rng)


def exam_links(db, exam_id):
    exam = crud.get_exam_complete(db, exam_id)
    return exam, [link for section in exam.sections for link in section.questions]


# ─── Bank rules ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_bank_rule_picks_exact_count(db, assembler):
    bank = make_bank_questions(db, 7, tags=("algebra",))
    blueprint_id = make_blueprint(db, [
        {"name": "Algebra", "rules": [use_existing(5, marks_per_question=2)]},
    ])

    result = await assembler.assemble(blueprint_id, "Unit Test 1", duration=30)

    assert result.total_marks == 10
    assert result.question_count == 5
    exam, links = exam_links(db, result.exam_id)
    assert exam.total_marks == 10
    assert [link.order for link in links] == [1, 2, 3, 4, 5]
    assert len({link.question_id for link in links}) == 5
    assert all(link.question_id in bank for link in links)
    assert all(link.marks == 2 for link in links)


@pytest.mark.asyncio
async def test_short_bank_fails_without_creating_exam(db, assembler):
    make_bank_questions(db, 3, tags=("algebra",))
    blueprint_id = make_blueprint(db, [{"name": "Algebra", "rules": [use_existing(5)]}])

    with pytest.raises(InsufficientPoolError) as exc_info:
        await assembler.assemble(blueprint_id, "Unit Test 1")

    message = str(exc_info.value)
    assert "Needed 5, Found 3" in message
    assert "Type: mcq_single" in message
    assert "algebra" in message
    assert exc_info.value.section == "Algebra"
    assert db.query(models.Exam).count() == 0


@pytest.mark.asyncio
async def test_questions_are_unique_across_rules(db, assembler):
    make_bank_questions(db, 7, tags=("algebra",))
    blueprint_id = make_blueprint(db, [
        {"name": "Part A", "rules": [use_existing(3)]},
        {"name": "Part B", "rules": [use_existing(4)]},
    ])

    result = await assembler.assemble(blueprint_id, "Unit Test 1")

    _, links = exam_links(db, result.exam_id)
    assert len({link.question_id for link in links}) == 7


@pytest.mark.asyncio
async def test_later_rule_sees_bank_minus_earlier_picks(db, assembler):
    make_bank_questions(db, 6, tags=("algebra",))
    blueprint_id = make_blueprint(db, [
        {"name": "Part A", "rules": [use_existing(3), use_existing(4)]},
    ])

    with pytest.raises(InsufficientPoolError) as exc_info:
        await assembler.assemble(blueprint_id, "Unit Test 1")
    assert exc_info.value.needed == 4
    assert exc_info.value.found == 3


@pytest.mark.asyncio
async def test_sections_totals_and_negative_marks(db, assembler):
    make_bank_questions(db, 3, tags=("algebra",))
    make_bank_questions(db, 2, question_type="true_false", tags=("biology",))
    blueprint_id = make_blueprint(db, [
        {"name": "Objective", "rules": [use_existing(3, marks_per_question=4, negative_marks=1)]},
        {"name": "Quick Check", "rules": [use_existing(2, question_type="true_false", tags=("biology",))]},
    ])

    result = await assembler.assemble(blueprint_id, "Mock Paper")

    assert result.total_marks == 14
    exam = crud.get_exam_complete(db, result.exam_id)
    assert [s.name for s in exam.sections] == ["Objective", "Quick Check"]
    assert [s.order for s in exam.sections] == [1, 2]
    objective, quick = exam.sections
    assert all(link.negative_marks == 1 for link in objective.questions)
    assert all(link.negative_marks is None for link in quick.questions)
    assert [link.order for link in quick.questions] == [1, 2]


@pytest.mark.asyncio
async def test_difficulty_filters_bank(db, assembler):
    matching = make_bank_questions(db, 4, tags=("algebra",), difficulty=3)
    make_bank_questions(db, 4, tags=("algebra",), difficulty=2)
    blueprint_id = make_blueprint(db, [{"name": "A", "rules": [use_existing(4, difficulty=3)]}])

    result = await assembler.assemble(blueprint_id, "Unit Test 1")

    _, links = exam_links(db, result.exam_id)
    assert sorted(link.question_id for link in links) == matching


@pytest.mark.asyncio
async def test_any_matching_tag_is_enough(db, assembler):
    make_bank_questions(db, 2, tags=("algebra",))
    make_bank_questions(db, 2, tags=("geometry",))
    blueprint_id = make_blueprint(db, [{"name": "A", "rules": [use_existing(4, tags=("algebra", "geometry"))]}])

    result = await assembler.assemble(blueprint_id, "Unit Test 1")
    assert result.question_count == 4


@pytest.mark.asyncio
async def test_same_seed_same_selection(db, client, config):
    make_bank_questions(db, 10, tags=("algebra",))
    blueprint_id = make_blueprint(db, [{"name": "A", "rules": [use_existing(4)]}])

    picks = []
    for _ in range(2):
        assembler = ExamAssembler(db, client, config, rng=random.Random(7))
        result = await assembler.assemble(blueprint_id, "Seeded")
        _, links = exam_links(db, result.exam_id)
        picks.append([link.question_id for link in links])
    assert picks[0] == picks[1]


@pytest.mark.asyncio
async def test_exam_bookkeeping(db, assembler):
    make_bank_questions(db, 2, tags=("algebra",))
    blueprint_id = make_blueprint(db, [{"name": "A", "rules": [use_existing(2)]}])

    result = await assembler.assemble(
        blueprint_id, "Weekly Quiz", description="Chapter 4", duration=45, creator_id="teacher-7"
    )

    exam = crud.get_exam_complete(db, result.exam_id)
    assert exam.title == "Weekly Quiz"
    assert exam.description == {"en": "Chapter 4"}
    assert exam.duration == 45
    assert exam.status == "draft"
    assert exam.created_by == "teacher-7"
    assert exam.blueprint_id == blueprint_id
    assert exam.expected_questions == 2


@pytest.mark.asyncio
async def test_missing_blueprint(assembler):
    with pytest.raises(BlueprintNotFoundError):
        await assembler.assemble(999, "Nothing")


def test_exam_creation_rolls_back_on_bad_link(db):
    exam_fields = {"title": "Broken", "duration": 10, "total_marks": 1}
    sections = [{"name": "A", "order": 1, "links": [{"question_id": None, "marks": 1}]}]

    with pytest.raises(IntegrityError):
        crud.create_exam_with_sections(db, exam_fields, sections)

    assert db.query(models.Exam).count() == 0
    assert db.query(models.ExamSection).count() == 0


# ─── Novel rules ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_novel_true_false_questions_are_grounded(db, assembler, responder):
    material = store_material(db, "Biology Notes", PHOTOSYNTHESIS_TEXT)
    chunk_texts = [c.text for c in crud.get_chunks(db)]
    blueprint_id = make_blueprint(
        db,
        [{"name": "Biology", "rules": [generate_novel(2, marks_per_question=1)]}],
        materials=[material],
    )

    result = await assembler.assemble(blueprint_id, "Biology Quiz")

    assert result.question_count == 2
    assert len(result.synthesized_question_ids) == 2
    assert result.warnings == []
    assert len(responder.prompts["extract"]) == 1

    questions = crud.get_questions_by_ids(db, result.synthesized_question_ids)
    for question in questions:
        assert question.type == "true_false"
        assert question.is_ai_generated is True
        assert [o["text"]["en"] for o in question.options] == ["True", "False"]
        assert question.correct_answer == ["True"]
        excerpt = question.citation["excerpt"]
        assert excerpt
        assert any(excerpt in text for text in chunk_texts)
        assert question.citation["grounded"] is True
        assert question.citation["source_title"] == "Biology Notes"
        # reviewer's suggested difficulty is what gets stored
        assert question.difficulty == 4
        assert question.review_score == 8
        assert [t.name for t in question.tags] == ["photosynthesis"]

    _, links = exam_links(db, result.exam_id)
    assert sorted(link.question_id for link in links) == sorted(result.synthesized_question_ids)


@pytest.mark.asyncio
async def test_novel_rule_retrieves_distinct_chunks(db, assembler, responder):
    material = store_material(db, "Biology Notes", PHOTOSYNTHESIS_TEXT)
    blueprint_id = make_blueprint(db, [{"name": "B", "rules": [generate_novel(3)]}], materials=[material])

    await assembler.assemble(blueprint_id, "Biology Quiz")

    extract_prompt = responder.prompts["extract"][0]
    # three retrievals at offsets 0..2 give three different chunks in one blob
    assert extract_prompt.count("---") == 2


@pytest.mark.asyncio
async def test_novel_rule_only_uses_blueprint_materials(db, assembler):
    store_material(db, "Algebra Basics", ALGEBRA_TEXT)
    biology = store_material(db, "Biology Notes", PHOTOSYNTHESIS_TEXT)
    blueprint_id = make_blueprint(db, [{"name": "B", "rules": [generate_novel(2)]}], materials=[biology])

    result = await assembler.assemble(blueprint_id, "Biology Quiz")

    for question in crud.get_questions_by_ids(db, result.synthesized_question_ids):
        assert question.citation["source_title"] == "Biology Notes"


@pytest.mark.asyncio
async def test_no_reference_material_is_flagged(db, assembler):
    blueprint_id = make_blueprint(db, [{"name": "B", "rules": [generate_novel(2, question_type="mcq_single")]}])

    result = await assembler.assemble(blueprint_id, "Biology Quiz")

    assert result.question_count == 2
    assert len(result.warnings) == 1
    assert "not grounded" in result.warnings[0]
    for question in crud.get_questions_by_ids(db, result.synthesized_question_ids):
        assert question.citation["grounded"] is False


@pytest.mark.asyncio
async def test_synthesized_questions_survive_later_failure(db, assembler):
    material = store_material(db, "Biology Notes", PHOTOSYNTHESIS_TEXT)
    blueprint_id = make_blueprint(
        db,
        [{"name": "Mixed", "rules": [generate_novel(2), use_existing(5)]}],
        materials=[material],
    )

    with pytest.raises(InsufficientPoolError):
        await assembler.assemble(blueprint_id, "Doomed")

    assert db.query(models.Exam).count() == 0
    orphans = db.query(models.Question).filter(models.Question.is_ai_generated.is_(True)).all()
    assert len(orphans) == 2


@pytest.mark.asyncio
async def test_synthesis_shortfall_fails_the_run(db, assembler, responder):
    material = store_material(db, "Biology Notes", PHOTOSYNTHESIS_TEXT)
    blueprint_id = make_blueprint(db, [{"name": "B", "rules": [generate_novel(2)]}], materials=[material])
    responder.handlers["extract"] = lambda prompt: '{"concepts": [{"concept": "one", "supporting_text": "two"}]}'

    with pytest.raises(SynthesisShortfallError) as exc_info:
        await assembler.assemble(blueprint_id, "Short")
    assert db.query(models.Exam).count() == 0

    rule = db.query(models.BlueprintRule).one()
    error = exc_info.value
    assert (error.needed, error.produced) == (2, 1)
    assert error.rule_id == rule.id
    assert error.section == "B"
    assert error.to_detail()["rule_id"] == rule.id


@pytest.mark.asyncio
async def test_fill_shortage_failure_names_the_rule(db, assembler, responder):
    make_bank_questions(db, 1, tags=("algebra",))
    blueprint_id = make_blueprint(db, [{"name": "Algebra", "rules": [use_existing(4)]}])
    responder.handlers["craft"] = lambda prompt: "no json here"

    with pytest.raises(MalformedResponseError) as exc_info:
        await assembler.assemble(blueprint_id, "Topped Up", fill_shortage_with_synthesis=True)

    rule = db.query(models.BlueprintRule).one()
    assert exc_info.value.rule_id == rule.id
    assert exc_info.value.to_detail()["section"] == "Algebra"
    assert exc_info.value.stage == "craft"


@pytest.mark.asyncio
@pytest.mark.parametrize("rule_kwargs", [
    {"question_type": "paragraph"},
    {"question_type": "mcq_single", "difficulty": 7},
])
async def test_unsynthesizable_rule_is_rejected_before_any_call(db, assembler, fake_openai, rule_kwargs):
    blueprint_id = make_blueprint(db, [{"name": "Reading", "rules": [generate_novel(2, **rule_kwargs)]}])

    with pytest.raises(InvalidRuleError) as exc_info:
        await assembler.assemble(blueprint_id, "Bad Rule")

    rule = db.query(models.BlueprintRule).one()
    assert exc_info.value.rule_id == rule.id
    assert exc_info.value.section == "Reading"
    assert exc_info.value.status_code == 400
    assert fake_openai.chat_calls == 0
    assert fake_openai.embedding_calls == 0
    assert db.query(models.Exam).count() == 0


@pytest.mark.asyncio
async def test_novel_rule_with_zero_questions_is_skipped(db, assembler, fake_openai):
    make_bank_questions(db, 2, tags=("algebra",))
    blueprint_id = make_blueprint(db, [
        {"name": "A", "rules": [generate_novel(0), use_existing(2)]},
    ])

    result = await assembler.assemble(blueprint_id, "Mostly Bank")

    assert result.question_count == 2
    assert result.synthesized_question_ids == []
    assert fake_openai.chat_calls == 0
    assert fake_openai.embedding_calls == 0


@pytest.mark.asyncio
async def test_fill_shortage_synthesizes_the_remainder(db, assembler):
    bank = make_bank_questions(db, 3, tags=("algebra",))
    store_material(db, "Algebra Basics", ALGEBRA_TEXT)
    blueprint_id = make_blueprint(db, [{"name": "Algebra", "rules": [use_existing(5)]}])

    result = await assembler.assemble(blueprint_id, "Topped Up", fill_shortage_with_synthesis=True)

    assert result.question_count == 5
    assert len(result.synthesized_question_ids) == 2
    _, links = exam_links(db, result.exam_id)
    linked = [link.question_id for link in links]
    assert set(bank) <= set(linked)
    assert set(result.synthesized_question_ids) <= set(linked)
    for question in crud.get_questions_by_ids(db, result.synthesized_question_ids):
        assert question.type == "mcq_single"
        assert question.correct_answer == ["Beta"]


# ─── Shortage report ──────────────────────────────────────────────────────────

def test_check_shortage(db, assembler):
    make_bank_questions(db, 3, tags=("algebra",))
    make_bank_questions(db, 4, question_type="true_false", tags=("biology",))
    blueprint_id = make_blueprint(db, [
        {"name": "A", "rules": [use_existing(5), use_existing(2, question_type="true_false", tags=("biology",))]},
        {"name": "B", "rules": [generate_novel(10)]},
    ])

    report = assembler.check_shortage(blueprint_id)

    assert report.has_shortage is True
    assert report.total_required == 7
    assert report.total_missing == 2
    assert [(r.required, r.found, r.missing) for r in report.rules] == [(5, 3, 2), (2, 4, 0)]
    assert report.rules[0].tags == ["algebra"]


def test_check_shortage_does_not_open_vector_index(db, client, config, monkeypatch):
    def unreachable():
        raise AssertionError("vector index opened for a shortage check")

    monkeypatch.setattr("embeddings.qdrant_manager.get_qdrant_manager", unreachable)
    config.vector_backend = "qdrant"
    make_bank_questions(db, 1, tags=("algebra",))
    blueprint_id = make_blueprint(db, [{"name": "A", "rules": [use_existing(3)]}])

    report = ExamAssembler(db, client, config).check_shortage(blueprint_id)
    assert report.total_missing == 2


def test_check_shortage_missing_blueprint(assembler):
    with pytest.raises(BlueprintNotFoundError):
        assembler.check_shortage(42)
