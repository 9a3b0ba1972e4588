import asyncio

import pytest

from propsearch.config import Settings
from propsearch.errors import UpstreamUnavailable
from propsearch.normalizer import Normalizer
from propsearch.search_index import InMemoryIndex
from propsearch.text_ranker import TextRanker

from factories import HANOI


class StalledIndex(InMemoryIndex):
    async def text_candidates(self, *args, **kwargs):
        await asyncio.sleep(1)
        return await super().text_candidates(*args, **kwargs)


def rank(index, config, text, language="en", filters=None):
    request = Normalizer(config).normalize(text, language, filters)
    return asyncio.run(TextRanker(index, config).rank(request))


def test_empty_text_passes_every_document_through(index, config):
    candidates = rank(index, config, "", filters={"star_ratings": "5"})

    assert len(candidates) == 7
    assert all(candidate.relevance == 0.0 for candidate in candidates)


def test_relevance_is_normalized(index, config):
    candidates = rank(index, config, "hotel")

    assert candidates
    assert max(candidate.relevance for candidate in candidates) == pytest.approx(1.0)
    assert all(0.0 < candidate.relevance <= 1.0 for candidate in candidates)


def test_misspelled_token_still_matches(index, config):
    ids = {candidate.doc.id for candidate in rank(index, config, "hanoy pearl")}

    assert "hn-pearl" in ids


def test_folded_query_matches_accented_names(index, config):
    ids = [candidate.doc.id for candidate in rank(index, config, "khach san metropole", "vi")]

    assert ids[0] == "hn-metropole"


def test_location_is_pushed_to_the_index(index, config):
    candidates = rank(index, config, "", filters={"lat": HANOI[0], "lon": HANOI[1], "radius_km": 50})
    ids = {candidate.doc.id for candidate in candidates}

    assert "hcm-rex" not in ids
    assert "hn-lakeview" not in ids
    assert "hn-socson" in ids


def test_slow_index_raises_upstream_unavailable(documents):
    config = Settings(cache_backend="memory", index_backend="memory", text_stage_timeout=0.01)

    with pytest.raises(UpstreamUnavailable):
        rank(StalledIndex(documents), config, "hotel")
