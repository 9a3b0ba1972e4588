from datetime import datetime, timezone

import pytest

from propsearch.config import Settings
from propsearch.models import PopularityRecord, SortMode
from propsearch.popularity import PopularitySnapshot
from propsearch.scoring import ScoreComposer

from factories import make_doc

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def composer():
    return ScoreComposer(Settings())


def ids(scored):
    return [item.doc.id for item in scored]


def test_ties_break_on_rating_then_id(composer):
    docs = [
        make_doc("b", "B", None, None, None, 100, rating=4.0),
        make_doc("a", "A", None, None, None, 100, rating=4.0),
        make_doc("c", "C", None, None, None, 100, rating=4.5),
    ]
    # Review score feeds the boost, so neutralize it to force equal finals.
    for doc in docs:
        doc.search_boost.review_score = 4.0
    scored = composer.compose(docs, {}, None, None)

    assert len({item.score.final for item in scored}) == 1
    assert ids(composer.order(scored, SortMode.RELEVANCE)) == ["c", "a", "b"]


def test_promotion_is_a_bounded_bonus(composer):
    strong = make_doc("strong", "Strong", None, None, None, 100)
    promoted = make_doc("promoted", "Promoted", None, None, None, 100, promoted=True)
    scored = composer.compose([strong, promoted], {"strong": 1.0, "promoted": 0.5}, None, None)
    by_id = {item.doc.id: item.score for item in scored}

    assert by_id["promoted"].business_boost - by_id["strong"].business_boost == pytest.approx(0.02)
    assert ids(composer.order(scored, SortMode.RELEVANCE)) == ["strong", "promoted"]


def test_distance_sort_puts_missing_distances_last(composer):
    docs = [make_doc(name, name, None, None, None, 100) for name in ("x", "y", "z")]
    scored = composer.compose(docs, {}, {"x": 5.0, "y": 1.0}, None)

    assert ids(composer.order(scored, SortMode.DISTANCE)) == ["y", "x", "z"]


def test_price_sorts_put_unpriced_last(composer):
    docs = [
        make_doc("cheap", "Cheap", None, None, None, 100),
        make_doc("dear", "Dear", None, None, None, 900),
        make_doc("none", "None", None, None, None, None),
    ]
    scored = composer.compose(docs, {}, None, None)

    assert ids(composer.order(scored, SortMode.PRICE_LOW_TO_HIGH)) == ["cheap", "dear", "none"]
    assert ids(composer.order(scored, SortMode.PRICE_HIGH_TO_LOW)) == ["dear", "cheap", "none"]


def test_price_sorts_compare_the_request_currency(composer):
    docs = [
        make_doc("usd", "Usd", None, None, None, 120, currency="USD"),
        make_doc("vnd", "Vnd", None, None, None, 400_000),
        make_doc("vnd-dear", "Vnd dear", None, None, None, 900_000),
    ]
    scored = composer.compose(docs, {}, None, None)

    assert ids(composer.order(scored, SortMode.PRICE_LOW_TO_HIGH)) == ["vnd", "vnd-dear", "usd"]
    assert ids(composer.order(scored, SortMode.PRICE_HIGH_TO_LOW, "VND")) == ["vnd-dear", "vnd", "usd"]
    assert ids(composer.order(scored, SortMode.PRICE_LOW_TO_HIGH, "USD"))[0] == "usd"


def test_snapshot_overrides_stored_popularity(composer):
    doc = make_doc("p", "P", None, None, None, 100, popularity=0.1)
    record = PopularityRecord(
        key="p", scope="property", trending_score=0.9, conversion_rate=0.5, window_start=NOW, window_end=NOW
    )
    snapshot = PopularitySnapshot.build(1, NOW, NOW, [record])

    without = composer.compose([doc], {}, None, None)[0].score
    with_snapshot = composer.compose([doc], {}, None, snapshot)[0].score

    assert without.popularity == pytest.approx(0.1)
    assert with_snapshot.popularity == pytest.approx(0.9)
    assert with_snapshot.final > without.final


def test_final_combines_text_and_distance(composer):
    doc = make_doc("d", "D", None, None, None, 100, rating=0.0)
    score = composer.compose([doc], {"d": 1.0}, {"d": 0.0}, None)[0].score

    assert score.final == pytest.approx(0.6 + 0.2)
