import asyncio
from datetime import datetime, timezone

import pytest

from propsearch.config import Settings
from propsearch.models import PopularityRecord, SuggestionType
from propsearch.normalizer import Normalizer
from propsearch.popularity import PopularitySnapshot, PopularityStore
from propsearch.search_index import InMemoryIndex
from propsearch.suggest import EXACT, NGRAM, PREFIX, SUBSTRING, AutocompleteSuggester, classify

from factories import HANOI, make_doc


def suggest(index, prefix, language="vi", config=None, store=None, **kwargs):
    config = config or Settings(cache_backend="memory", index_backend="memory")
    request = Normalizer(config).normalize_suggest(prefix, language, **kwargs)
    suggester = AutocompleteSuggester(index, store or PopularityStore(), config)
    return asyncio.run(suggester.suggest(request))


@pytest.mark.parametrize(
    "candidate, query, expected",
    [
        ("ha noi", "ha noi", EXACT),
        ("ha noi", "ha", PREFIX),
        ("sofitel legend metropole", "leg met", NGRAM),
        ("sofitel legend metropole", "metrp", NGRAM),
        ("hanoi pearl", "noi p", SUBSTRING),
        ("rex hotel", "zzz", None),
    ],
)
def test_classify(candidate, query, expected):
    assert classify(candidate, query) == expected


def test_result_count_is_capped(index):
    config = Settings(cache_backend="memory", index_backend="memory", suggest_max_limit=2)

    suggestions = suggest(index, "h", "en", config=config, limit=10)

    assert len(suggestions) == 2


def test_duplicate_names_collapse_to_the_stronger_entry():
    index = InMemoryIndex(
        [
            make_doc("lotus-a", "Lotus Hotel", "Huế", 16.46, 107.59, 100, popularity=0.2),
            make_doc("lotus-b", "Lotus Hotel", "Hội An", 15.88, 108.33, 100, popularity=0.7),
        ]
    )

    suggestions = [item for item in suggest(index, "lotus") if item.type is SuggestionType.PROPERTY]

    assert len(suggestions) == 1
    assert suggestions[0].property_id == "lotus-b"
    assert suggestions[0].popularity == pytest.approx(0.7)


def test_geo_hint_prefers_nearby_properties():
    index = InMemoryIndex(
        [
            make_doc("lotus-hn", "Lotus Hotel Hanoi", "Hà Nội", 21.03, 105.85, 100, popularity=0.5),
            make_doc("lotus-sg", "Lotus Hotel Saigon", "Hồ Chí Minh", 10.77, 106.70, 100, popularity=0.5),
        ]
    )

    suggestions = suggest(index, "lotus", geo_hint=HANOI)

    assert suggestions[0].property_id == "lotus-hn"
    assert suggestions[0].score > suggestions[1].score


def test_special_characters_use_literal_matching():
    index = InMemoryIndex([make_doc("cafe", "Café #1", "Hà Nội", 21.03, 105.85, 100)])

    suggestions = suggest(index, "Café #1")

    assert [item.match for item in suggestions] == [EXACT]
    assert suggestions[0].display_text == "Café #1"


def test_published_destinations_are_suggested(index):
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    store = PopularityStore()
    store.publish(
        PopularitySnapshot.build(
            1,
            now,
            now,
            [
                PopularityRecord(
                    key="dalat",
                    scope="destination",
                    label="Đà Lạt",
                    trending_score=0.8,
                    country_code="VN",
                    window_start=now,
                    window_end=now,
                )
            ],
        )
    )

    suggestions = suggest(index, "da l", store=store)

    assert [(item.display_text, item.type) for item in suggestions] == [("Đà Lạt", SuggestionType.DESTINATION)]


def test_blank_prefix_has_no_suggestions(index):
    assert suggest(index, "   ") == []
