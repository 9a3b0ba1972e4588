import pytest

from propsearch.geo import GeoFilter, bounding_box, distance_score, haversine_km
from propsearch.models import LocationFilter

from factories import HANOI, make_doc


def test_haversine_known_distance():
    # Hanoi -> Ho Chi Minh City is roughly 1,140 km as the crow flies.
    assert haversine_km(21.0285, 105.8542, 10.7769, 106.7009) == pytest.approx(1140, rel=0.01)
    assert haversine_km(*HANOI, *HANOI) == 0.0


def test_bounding_box_contains_circle():
    box = bounding_box(*HANOI, 10)
    assert box.contains(*HANOI)
    assert box.contains(HANOI[0] + 0.08, HANOI[1])
    assert not box.contains(HANOI[0] + 0.2, HANOI[1])


def test_bounding_box_wraps_antimeridian():
    box = bounding_box(0.0, 179.95, 50)
    assert box.crosses_antimeridian
    assert box.contains(0.0, -179.9)
    assert box.contains(0.0, 179.9)
    assert not box.contains(0.0, 0.0)


def test_bounding_box_near_pole_spans_all_longitudes():
    box = bounding_box(89.9, 10.0, 50)
    assert (box.min_lon, box.max_lon) == (-180.0, 180.0)
    assert box.max_lat == 90.0


def test_geo_filter_skips_invalid_coordinates():
    docs = [
        make_doc("near", "Near", "Hà Nội", 21.03, 105.85, 100),
        make_doc("far", "Far", "Hồ Chí Minh", 10.77, 106.70, 100),
        make_doc("broken", "Broken", "Hà Nội", 200.0, 105.85, 100),
        make_doc("missing", "Missing", "Hà Nội", None, None, 100),
    ]
    location = LocationFilter(lat=HANOI[0], lon=HANOI[1], radius_km=10)

    distances = GeoFilter().apply(docs, location)

    assert set(distances) == {"near"}
    assert distances["near"] < 1


def test_distance_score_decays():
    assert distance_score(0) == 1.0
    assert distance_score(1) == 0.5
    assert distance_score(None) == 0.0
