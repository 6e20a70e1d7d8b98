import json

import pytest

from generation.concept_extractor import anchor_excerpt, extract_concepts, find_verbatim
from generation.errors import MalformedResponseError
from tests.fixtures.sample_data import PHOTOSYNTHESIS_TEXT


# ─── Anchoring ────────────────────────────────────────────────────────────────

def test_find_verbatim_ignores_case_and_whitespace():
    source = "Chlorophyll is the green pigment\n  in chloroplasts."
    found = find_verbatim("chlorophyll is the GREEN pigment in chloroplasts", source)
    assert found == "Chlorophyll is the green pigment\n  in chloroplasts"
    assert found in source


def test_find_verbatim_strips_quotes():
    source = "The Calvin cycle runs in the stroma."
    assert find_verbatim('"The Calvin cycle runs in the stroma."', source) == "The Calvin cycle runs in the stroma"


def test_anchor_returns_real_slice_from_matching_source():
    sources = ["Unrelated chunk about algebra.", PHOTOSYNTHESIS_TEXT]
    text, index, verbatim = anchor_excerpt("It reflects green light", sources)
    assert verbatim is True
    assert index == 1
    assert text in PHOTOSYNTHESIS_TEXT


def test_anchor_falls_back_to_closest_sentence():
    # paraphrase, not present verbatim
    text, index, verbatim = anchor_excerpt(
        "the Calvin cycle fixes carbon dioxide in the stroma", [PHOTOSYNTHESIS_TEXT]
    )
    assert verbatim is False
    assert index == 0
    assert text.startswith("The Calvin cycle runs in the stroma")
    assert text in PHOTOSYNTHESIS_TEXT


def test_anchor_with_only_empty_sources():
    text, index, verbatim = anchor_excerpt("anything", ["", "   "])
    assert index is None
    assert verbatim is False


# ─── Agent ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_extract_returns_requested_count(client):
    concepts = await extract_concepts(client, PHOTOSYNTHESIS_TEXT, 3, topic="biology")
    assert len(concepts) == 3
    assert all(c.claim and c.excerpt for c in concepts)


@pytest.mark.asyncio
async def test_extract_slices_extra_concepts(client, responder):
    responder.handlers["extract"] = lambda prompt: json.dumps({
        "concepts": [{"concept": f"c{i}", "supporting_text": f"s{i}"} for i in range(6)]
    })
    concepts = await extract_concepts(client, PHOTOSYNTHESIS_TEXT, 2)
    assert [c.claim for c in concepts] == ["c0", "c1"]


@pytest.mark.asyncio
async def test_extract_drops_incomplete_items(client, responder):
    responder.handlers["extract"] = lambda prompt: json.dumps({
        "concepts": [{"concept": "only a claim"}, {"concept": "ok", "supporting_text": "quote"}]
    })
    concepts = await extract_concepts(client, PHOTOSYNTHESIS_TEXT, 2)
    assert [c.claim for c in concepts] == ["ok"]


@pytest.mark.asyncio
async def test_extract_unparseable_is_fatal(client, responder):
    responder.handlers["extract"] = lambda prompt: "Sorry, I cannot do that."
    with pytest.raises(MalformedResponseError):
        await extract_concepts(client, PHOTOSYNTHESIS_TEXT, 2)


@pytest.mark.asyncio
async def test_extract_missing_concepts_key_is_fatal(client, responder):
    responder.handlers["extract"] = lambda prompt: '{"items": []}'
    with pytest.raises(MalformedResponseError):
        await extract_concepts(client, PHOTOSYNTHESIS_TEXT, 2)
