from propsearch.facets import FacetAggregator, price_bucket
from propsearch.filters import apply_filters
from propsearch.models import AmenityFilter, CityFilter, PriceFilter, StarRatingFilter

from factories import make_doc


def bucket_counts(group):
    return {bucket.key: bucket.count for bucket in group.buckets}


def test_single_valued_groups_partition_the_result_set(documents):
    filters = (AmenityFilter(amenity_ids=("wifi",)),)
    facets = FacetAggregator("VND").aggregate(documents, filters)
    result_count = len(apply_filters(documents, filters))

    for group in (facets.price, facets.star_rating, facets.city, facets.property_type):
        assert group.total == result_count
        assert sum(bucket.count for bucket in group.buckets) == group.total


def test_own_filter_is_excluded_from_its_facet(documents):
    filters = (StarRatingFilter(ratings=(5,)), CityFilter(cities=("hanoi",)))
    facets = FacetAggregator("VND").aggregate(documents, filters)

    # Star buckets ignore the star filter but respect the city filter.
    assert bucket_counts(facets.star_rating) == {"5": 1, "4": 2, "3": 1, "2": 1}
    # City buckets ignore the city filter but respect the star filter.
    assert bucket_counts(facets.city) == {"hanoi": 1, "hochiminh": 1, "danang": 1}
    assert {bucket.label for bucket in facets.city.buckets} == {"Hà Nội", "Hồ Chí Minh", "Đà Nẵng"}


def test_price_buckets_use_requested_currency(documents):
    docs = documents + [make_doc("usd-only", "Dollar Inn", "Hà Nội", 21.0, 105.8, 80, currency="USD")]
    filters = (PriceFilter(min_price=1_000_000, max_price=2_000_000, currency="VND"),)
    facets = FacetAggregator("VND").aggregate(docs, filters)

    counts = bucket_counts(facets.price)
    assert counts["unpriced"] == 1
    assert counts["1000000-2000000"] == 2
    assert facets.price.total == len(docs)


def test_amenity_total_counts_documents_once(documents):
    facets = FacetAggregator("VND").aggregate(documents, ())

    counts = bucket_counts(facets.amenity)
    assert counts["wifi"] == 4
    assert counts["pool"] == 4
    assert facets.amenity.total == len(documents)
    assert sum(counts.values()) > facets.amenity.total


def test_price_bucket_edges():
    assert price_bucket(make_doc("a", "A", None, None, None, 499_999), "VND") == "0-500000"
    assert price_bucket(make_doc("b", "B", None, None, None, 500_000), "VND") == "500000-1000000"
    assert price_bucket(make_doc("c", "C", None, None, None, 9_000_000), "VND") == "5000000+"
    assert price_bucket(make_doc("d", "D", None, None, None, None), "VND") == "unpriced"
