from datetime import datetime, timezone

import json

import pytest

from contact_directory.store import (
    ConstraintViolationError,
    JsonContactStore,
    MemoryContactStore,
    TransientStoreError,
    matches,
    sort_documents,
    with_retry,
)


def _doc(contact_id, name, **extra):
    doc = {
        "id": contact_id,
        "name": name,
        "isMainContact": True,
        "parentContactId": None,
        "duplicateGroup": None,
        "phones": [],
        "emails": [],
        "tags": [],
        "alternateNames": [],
    }
    doc.update(extra)
    return doc


def test_matches_logical_operators():
    doc = _doc("1", "Asha Shah", city="Mumbai")
    assert matches(doc, {})
    assert matches(doc, {"AND": [{"name": {"contains": "asha", "mode": "insensitive"}}, {"city": "Mumbai"}]})
    assert not matches(doc, {"AND": [{"name": {"contains": "asha"}}]})
    assert matches(doc, {"OR": [{"city": "Pune"}, {"city": "Mumbai"}]})
    assert not matches(doc, {"OR": [{"city": "Pune"}]})
    assert matches(doc, {"NOT": {"city": "Pune"}})
    assert not matches(doc, {"NOT": [{"city": "Mumbai"}]})


def test_matches_field_operators():
    doc = _doc(
        "1",
        "Asha Shah",
        city="",
        category="VIP",
        tags=["family", "mumbai"],
        phones=[{"number": "+91 98765 43210", "isValid": True}],
        createdAt=datetime(2024, 3, 1, tzinfo=timezone.utc),
    )
    assert matches(doc, {"city": {"in": [None, ""]}})
    assert matches(doc, {"category": {"in": ["vip"], "mode": "insensitive"}})
    assert not matches(doc, {"category": {"in": ["vip"]}})
    assert matches(doc, {"duplicateGroup": None})
    assert not matches(doc, {"duplicateGroup": {"not": None}})
    assert matches(doc, {"tags": {"hasSome": ["friends", "family"]}})
    assert matches(doc, {"alternateNames": {"isEmpty": True}})
    assert matches(doc, {"phones": {"some": {}}})
    assert matches(doc, {"phones": {"some": {"isValid": True}}})
    assert matches(doc, {"emails": {"none": {}}})
    assert not matches(doc, {"phones": {"none": {}}})
    assert matches(doc, {"phones": {"some": {"number": {"contains": "98765"}}}})
    assert matches(doc, {"createdAt": {"gte": datetime(2024, 1, 1, tzinfo=timezone.utc)}})
    assert matches(doc, {"createdAt": {"lte": datetime(2024, 3, 2)}})
    assert not matches(doc, {"createdAt": {"gt": datetime(2024, 3, 1, tzinfo=timezone.utc)}})
    assert not matches(doc, {"lastUpdated": {"gte": datetime(2024, 1, 1, tzinfo=timezone.utc)}})


def test_sort_documents_multi_key():
    docs = [
        _doc("1", "Asha", isMainContact=False),
        _doc("2", "Asha", isMainContact=True),
        _doc("3", "Bina"),
        _doc("4", None),
    ]
    ordered = sort_documents(docs, [{"name": "asc"}, {"isMainContact": "desc"}])
    assert [d["id"] for d in ordered] == ["4", "2", "1", "3"]


def test_create_update_and_find():
    store = MemoryContactStore()
    created = store.create(_doc("a1", "Asha Shah"))
    assert created["createdAt"] is not None
    with pytest.raises(ConstraintViolationError):
        store.create(_doc("a1", "Other"))

    generated = store.create({"name": "No Id"})
    assert len(generated["id"]) == 24

    updated = store.update("a1", {"city": "Mumbai", "id": "ignored"})
    assert updated["city"] == "Mumbai"
    assert updated["id"] == "a1"
    assert store.update("missing", {"city": "Pune"}) is None
    assert store.find_unique("missing") is None
    assert store.count({}) == 2


def test_find_many_paging_and_includes():
    store = MemoryContactStore(
        [
            _doc("p", "Parent"),
            _doc("c1", "Child A", isMainContact=False, parentContactId="p"),
            _doc("c2", "Child B", isMainContact=False, parentContactId="p"),
        ]
    )
    page = store.find_many({}, skip=1, take=1, order_by=[{"name": "asc"}])
    assert [d["id"] for d in page] == ["c2"]

    [parent] = store.find_many({"id": "p"}, include={"parentContact": True, "childContacts": True})
    assert parent["parentContact"] is None
    assert sorted(child["id"] for child in parent["childContacts"]) == ["c1", "c2"]
    [child] = store.find_many({"id": "c1"}, include={"parentContact": True})
    assert child["parentContact"]["name"] == "Parent"


def test_returned_documents_are_copies():
    store = MemoryContactStore([_doc("a", "Asha")])
    found = store.find_unique("a")
    found["name"] = "Changed"
    assert store.find_unique("a")["name"] == "Asha"


def test_json_store_round_trip(tmp_path):
    path = tmp_path / "nested" / "contacts.json"
    store = JsonContactStore(path)
    assert len(store) == 0
    store.create(_doc("a", "Asha Shah", createdAt=datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)))
    store.save()

    reloaded = JsonContactStore(path)
    doc = reloaded.find_unique("a")
    assert doc["name"] == "Asha Shah"
    assert doc["createdAt"] == datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)
    assert isinstance(doc["lastUpdated"], datetime)


def test_string_timestamps_are_parsed_on_create_and_update():
    store = MemoryContactStore()
    store.create(_doc("a", "Asha Shah", createdAt="2023-05-01T00:00:00Z"))
    store.create(_doc("b", "Bina Rao", createdAt=datetime(2024, 2, 1)))
    store.update("a", {"lastUpdated": "2024-06-01"})

    asha = store.find_unique("a")
    assert asha["createdAt"] == datetime(2023, 5, 1, tzinfo=timezone.utc)
    assert asha["lastUpdated"] == datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert store.find_unique("b")["createdAt"].tzinfo is not None

    ordered = store.find_many({}, order_by=[{"createdAt": "desc"}])
    assert [doc["id"] for doc in ordered] == ["b", "a"]
    assert store.count({"createdAt": {"gte": datetime(2023, 1, 1, tzinfo=timezone.utc)}}) == 2


def test_json_store_reads_zulu_timestamps(tmp_path):
    path = tmp_path / "contacts.json"
    path.write_text(
        json.dumps([_doc("a", "Asha Shah", createdAt="2023-05-01T08:15:00Z", lastUpdated="not a date")]),
        encoding="utf-8",
    )
    doc = JsonContactStore(path).find_unique("a")
    assert doc["createdAt"] == datetime(2023, 5, 1, 8, 15, tzinfo=timezone.utc)
    assert isinstance(doc["lastUpdated"], datetime)


def test_with_retry_backs_off_then_gives_up():
    calls = []
    delays = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientStoreError("write conflict")
        return "ok"

    assert with_retry(flaky, retries=3, base_delay=0.5, sleep=delays.append, jitter=0.0) == "ok"
    assert delays == [0.5, 1.0]

    def always_busy():
        raise TransientStoreError("busy")

    with pytest.raises(TransientStoreError):
        with_retry(always_busy, retries=2, sleep=delays.append, jitter=0.0)
    assert delays[2:] == [0.25, 0.5]


def test_with_retry_passes_other_errors_through():
    def boom():
        raise ValueError("bad data")

    with pytest.raises(ValueError):
        with_retry(boom, retries=3, sleep=lambda _delay: None)
