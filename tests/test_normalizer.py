import pytest

from propsearch.cache import hash_signature
from propsearch.config import Settings
from propsearch.errors import ValidationError
from propsearch.models import SortMode
from propsearch.normalizer import Normalizer


@pytest.fixture
def normalizer():
    return Normalizer(Settings())


def test_text_is_folded(normalizer):
    request = normalizer.normalize("  Khách sạn   Hà Nội!! ", "vi")
    assert request.text == "khach san ha noi"
    assert request.tokens == ("khach", "san", "ha", "noi")


def test_pagination_is_clamped(normalizer):
    request = normalizer.normalize("hotel", "en", page=-3, size=10_000)
    assert request.page == 0
    assert request.size == 100

    request = normalizer.normalize("hotel", "en", page="abc", size="0")
    assert request.page == 0
    assert request.size == 1


def test_radius_defaults_and_clamps(normalizer):
    default = normalizer.normalize(None, None, {"lat": 21.0, "lon": 105.8}).location
    assert default.radius_km == 10

    negative = normalizer.normalize(None, None, {"lat": 21.0, "lon": 105.8, "radius_km": -5}).location
    assert negative.radius_km == 10

    huge = normalizer.normalize(None, None, {"lat": 21.0, "lon": 105.8, "radius_km": 50_000}).location
    assert huge.radius_km == 1000


def test_coordinates_are_clamped(normalizer):
    location = normalizer.normalize(None, None, {"lat": 95, "lon": -200}).location
    assert (location.lat, location.lon) == (90.0, -180.0)


def test_unknown_currency_is_rejected(normalizer):
    with pytest.raises(ValidationError) as excinfo:
        normalizer.normalize("hotel", "en", {"min_price": 100, "currency": "XYZ"})
    assert excinfo.value.field == "currency"


def test_price_bounds_are_swapped(normalizer):
    price = normalizer.normalize("hotel", "en", {"min_price": 900, "max_price": 100}).get_filter("price")
    assert (price.min_price, price.max_price) == (100, 900)
    assert price.currency == "VND"


def test_signature_is_stable_across_input_order(normalizer):
    first = normalizer.normalize("Hà Nội", "vi", {"amenities": "wifi,pool", "star_ratings": "5,4", "cities": "Hanoi"})
    second = normalizer.normalize("ha noi", "VI", {"cities": ["Hà Nội"], "star_ratings": [4, 5], "amenities": ["pool", "wifi"]})
    assert first.signature() == second.signature()
    assert hash_signature(first.signature()) == hash_signature(second.signature())


def test_signature_ignores_user_identity(normalizer):
    first = normalizer.normalize("hotel", "en", user_id="u-1", session_id="s-1")
    second = normalizer.normalize("hotel", "en", user_id="u-2")
    assert first.signature() == second.signature()


def test_geo_without_text_defaults_to_distance_sort(normalizer):
    assert normalizer.normalize(None, None, {"lat": 21.0, "lon": 105.8}).sort is SortMode.DISTANCE
    assert normalizer.normalize("hotel", "en", {"lat": 21.0, "lon": 105.8}).sort is SortMode.RELEVANCE


def test_distance_sort_without_location_falls_back(normalizer):
    assert normalizer.normalize("hotel", "en", sort="distance").sort is SortMode.RELEVANCE


def test_unknown_sort_falls_back_to_default(normalizer):
    assert normalizer.normalize("hotel", "en", sort="cheapest").sort is SortMode.RELEVANCE
    assert normalizer.normalize("hotel", "en", sort="price_low_to_high").sort is SortMode.PRICE_LOW_TO_HIGH


def test_invalid_filter_values_are_dropped(normalizer):
    request = normalizer.normalize(
        "hotel", "en", {"star_ratings": "7,abc,3", "property_types": "castle,villa", "min_price": "nan"}
    )
    assert request.get_filter("star_rating").ratings == (3,)
    assert request.get_filter("property_type").types == ("villa",)
    assert request.get_filter("price") is None


def test_unsupported_language_uses_default_index(normalizer):
    request = normalizer.normalize("hotel", "fr")
    assert request.language == "vi"
    assert request.tokens == ("hotel",)


def test_suggest_limit_is_capped():
    normalizer = Normalizer(Settings(suggest_max_limit=5))
    assert normalizer.normalize_suggest("ha", "vi", limit=500).limit == 5
    assert normalizer.normalize_suggest("ha", "vi", limit=-1).limit == 1
    assert normalizer.normalize_suggest("ha", "vi").limit == 5


def test_suggest_special_characters_switch_to_literal(normalizer):
    request = normalizer.normalize_suggest("ha#noi", "vi")
    assert request.literal
    assert request.raw == "ha#noi"
    assert not normalizer.normalize_suggest("ha noi", "vi").literal
    assert normalizer.normalize_suggest("ha noi", "ja").literal
