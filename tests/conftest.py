"""Shared fixtures: a small Vietnamese property catalogue and in-memory backends."""
from __future__ import annotations

import pytest

from factories import make_doc
from propsearch.cache import InMemoryCache, TieredCache
from propsearch.config import Settings
from propsearch.models import SearchDocument
from propsearch.search_index import InMemoryIndex
from propsearch.service import SearchService


@pytest.fixture
def documents() -> list[SearchDocument]:
    return [
        make_doc(
            "hn-metropole",
            "Sofitel Legend Metropole",
            "Hà Nội",
            21.0257,
            105.8563,
            4_500_000,
            vi_name="Khách sạn Sofitel Legend Metropole Hà Nội",
            stars=5,
            rating=4.8,
            reviews=2300,
            amenities=("wifi", "pool", "spa"),
            popularity=0.9,
            description="Historic hotel in the old quarter",
        ),
        make_doc(
            "hn-pearl",
            "Hanoi Pearl Hotel",
            "Hà Nội",
            21.0331,
            105.8502,
            1_600_000,
            vi_name="Khách sạn Hanoi Pearl",
            rating=4.5,
            amenities=("wifi", "breakfast"),
            popularity=0.6,
            promoted=True,
        ),
        make_doc(
            "hn-homestay",
            "Old Quarter Homestay",
            "Hà Nội",
            21.0359,
            105.8489,
            450_000,
            vi_name="Homestay Phố Cổ",
            kind="homestay",
            stars=2,
            rating=4.2,
            amenities=("wifi",),
            popularity=0.3,
        ),
        make_doc(
            "hn-socson",
            "Soc Son Resort",
            "Hà Nội",
            21.2570,
            105.8480,
            2_800_000,
            kind="resort",
            amenities=("pool",),
            popularity=0.2,
        ),
        make_doc(
            "hn-lakeview",
            "Lake View Hotel",
            "Hà Nội",
            200.0,
            105.85,
            1_200_000,
            stars=3,
            rating=3.9,
        ),
        make_doc(
            "hcm-rex",
            "Rex Hotel Saigon",
            "Hồ Chí Minh",
            10.7763,
            106.7011,
            3_200_000,
            stars=5,
            rating=4.4,
            amenities=("wifi", "pool"),
            popularity=0.8,
        ),
        make_doc(
            "dn-furama",
            "Furama Resort Danang",
            "Đà Nẵng",
            16.0397,
            108.2491,
            5_600_000,
            kind="resort",
            stars=5,
            rating=4.6,
            amenities=("pool", "beach"),
            popularity=0.7,
        ),
    ]


@pytest.fixture
def config() -> Settings:
    return Settings(cache_backend="memory", index_backend="memory")


@pytest.fixture
def index(documents) -> InMemoryIndex:
    return InMemoryIndex(documents)


@pytest.fixture
def cache(config) -> TieredCache:
    return TieredCache(InMemoryCache(), config)


@pytest.fixture
def service(index, cache, config) -> SearchService:
    return SearchService(index, cache, config=config)
