import json
from pathlib import Path

from propsearch.importer import _prepare_document, load_documents

SEED_FILE = Path(__file__).resolve().parent.parent / "data" / "properties.json"


def test_seed_file_loads():
    documents = load_documents(SEED_FILE)

    assert len(documents) == 7
    metropole = next(doc for doc in documents if doc.id == "hn-001")
    assert metropole.city == "Hà Nội"
    assert metropole.country_code == "VN"
    assert metropole.location.lat == 21.0257
    assert metropole.lowest_price("VND") == 4_500_000
    assert metropole.amenities[1].featured
    assert metropole.search_boost.popularity_score == 0.9


def test_flat_record_is_normalized():
    doc = _prepare_document(
        {
            "id": 42,
            "name": "Nhà nghỉ Bình An",
            "kind": "Homestay",
            "city": "Huế",
            "location": {"lat": 16.46, "lon": 107.59},
            "amenities": [{"name": "WiFi"}],
            "room_types": [{"base_price": 300000}],
            "images": [{"url": "https://img.example/1.jpg"}, "https://img.example/2.jpg"],
        }
    )

    assert doc.id == "42"
    assert doc.name == {"vi": "Nhà nghỉ Bình An"}
    assert doc.kind == "homestay"
    assert doc.location.lon == 107.59
    assert doc.amenities[0].id == "wifi"
    assert doc.room_types[0].currency == "VND"
    assert len(doc.images) == 2


def test_records_without_id_or_name_are_skipped():
    assert _prepare_document({"name": "Nameless id"}) is None
    assert _prepare_document({"id": "x"}) is None


def test_malformed_record_is_skipped():
    assert _prepare_document({"id": "x", "name": "Bad", "star_rating": "five"}) is None


def test_wrapped_records_and_lfs_pointers(tmp_path):
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps({"properties": [{"id": "a", "name": "A"}]}), encoding="utf-8")
    pointer = tmp_path / "pointer.json"
    pointer.write_text("version https://git-lfs.github.com/spec/v1\noid sha256:abc\n", encoding="utf-8")

    assert [doc.id for doc in load_documents(wrapped)] == ["a"]
    assert load_documents(pointer) == []
    assert load_documents(tmp_path / "missing.json") == []
