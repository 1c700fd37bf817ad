import pytest

from contact_directory import maintenance
from contact_directory.maintenance import (
    ParentAddressSync,
    address_patch,
    case_patch,
    normalize_case,
    sync_parent_addresses,
)
from contact_directory.store import JsonContactStore, MemoryContactStore, TransientStoreError


def _documents():
    return [
        {
            "id": "m1",
            "name": "asha  shah",
            "isMainContact": True,
            "address": "flat 12b, mg road",
            "city": "navi  mumbai",
            "state": "Maharashtra",
            "country": "India",
            "pincode": "400001",
            "alternateNames": ["asha ben"],
            "phones": [{"id": "phone_0", "number": "+91 98765 43210", "label": "home office"}],
            "relationships": [
                {
                    "id": "e1",
                    "contactId": "m1",
                    "relatedContactId": "r1",
                    "relationshipType": "child",
                    "description": "son rahul",
                }
            ],
        },
        {"id": "m2", "name": "Bina Rao", "isMainContact": True, "city": "Pune"},
        {
            "id": "r1",
            "name": "Rahul",
            "isMainContact": False,
            "parentContactId": "m1",
            "city": "",
            "state": "Gujarat",
        },
        {"id": "r2", "name": "Kiran", "isMainContact": False, "parentContactId": "ghost"},
        {"id": "r3", "name": "Priya", "isMainContact": False, "parentContactId": "m2", "city": "Pune"},
    ]


class FlakyUpdateStore(MemoryContactStore):
    def __init__(self, documents, failures):
        super().__init__(documents)
        self.failures = failures
        self.attempts = 0

    def update(self, contact_id, patch):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise TransientStoreError("lock timeout")
        return super().update(contact_id, patch)


@pytest.fixture
def store():
    return MemoryContactStore(_documents())


def test_case_patch_covers_nested_text():
    patch = case_patch(_documents()[0])
    assert patch["name"] == "Asha Shah"
    assert patch["address"] == "Flat 12b, Mg Road"
    assert patch["city"] == "Navi Mumbai"
    assert patch["alternateNames"] == ["Asha Ben"]
    assert patch["phones"][0]["label"] == "Home Office"
    assert patch["phones"][0]["number"] == "+91 98765 43210"
    assert patch["relationships"][0]["description"] == "Son Rahul"
    assert "state" not in patch
    assert "pincode" not in patch


def test_case_patch_is_empty_for_clean_documents():
    assert case_patch({"id": "x", "name": "Bina Rao", "city": "Pune", "phones": []}) == {}


def test_normalize_case_dry_run_leaves_store_untouched(store):
    report = normalize_case(store)
    assert report.applied is False
    assert report.scanned == 5
    assert report.eligible == 1
    assert report.skipped_no_change == 4
    assert report.updated == 0
    assert [contact_id for contact_id, _ in report.changes] == ["m1"]
    assert store.find_unique("m1")["name"] == "asha  shah"


def test_normalize_case_apply_pages_through_store(store):
    report = normalize_case(store, apply=True, batch_size=2)
    assert report.scanned == 5
    assert report.updated == 1
    asha = store.find_unique("m1")
    assert asha["name"] == "Asha Shah"
    assert asha["phones"][0]["label"] == "Home Office"
    assert asha["relationships"][0]["description"] == "Son Rahul"
    assert normalize_case(store).eligible == 0


def test_normalize_case_retries_transient_failures():
    delays = []
    store = FlakyUpdateStore(_documents(), failures=1)
    report = normalize_case(store, apply=True, retries=2, sleep=delays.append)
    assert report.updated == 1
    assert store.attempts == 2
    assert len(delays) == 1
    assert 0.25 <= delays[0] <= 0.35


def test_normalize_case_counts_exhausted_retries_as_failed():
    store = FlakyUpdateStore(_documents(), failures=10)
    report = normalize_case(store, apply=True, retries=2, sleep=lambda _delay: None)
    assert report.failed == 1
    assert report.updated == 0
    assert store.attempts == 3


def test_address_patch_fill_and_force():
    parent = {"address": "12 MG Road", "city": "Mumbai", "state": "Maharashtra", "pincode": ""}
    child = {"address": "", "city": "Thane", "state": None, "pincode": "400601"}
    assert address_patch(child, parent) == {"address": "12 MG Road", "state": "Maharashtra"}
    assert address_patch(child, parent, force=True) == {
        "address": "12 MG Road",
        "city": "Mumbai",
        "state": "Maharashtra",
    }
    assert address_patch(child, None) == {}


def test_sync_parent_addresses_dry_run(store):
    report = sync_parent_addresses(store, concurrency=1)
    assert report.scanned == 3
    assert report.eligible == 1
    assert report.skipped_no_parent == 1
    assert report.skipped_no_change == 1
    [(contact_id, patch)] = report.changes
    assert contact_id == "r1"
    assert patch == {
        "address": "flat 12b, mg road",
        "city": "navi  mumbai",
        "country": "India",
        "pincode": "400001",
    }
    assert store.find_unique("r1")["city"] == ""


def test_sync_parent_addresses_apply_with_force(store):
    report = ParentAddressSync(store, apply=True, force=True, concurrency=4).run()
    assert report.updated == 1
    rahul = store.find_unique("r1")
    assert rahul["state"] == "Maharashtra"
    assert rahul["pincode"] == "400001"
    assert store.find_unique("r3")["city"] == "Pune"


def test_maintenance_cli_applies_and_saves(tmp_path):
    path = tmp_path / "contacts.json"
    seeded = JsonContactStore(path)
    for document in _documents():
        seeded.create(document)
    seeded.save()

    assert maintenance.main(["--store", str(path), "normalize-case"]) == 0
    assert JsonContactStore(path).find_unique("m1")["name"] == "asha  shah"

    assert maintenance.main(["--store", str(path), "normalize-case", "--apply"]) == 0
    assert JsonContactStore(path).find_unique("m1")["name"] == "Asha Shah"

    assert maintenance.main(["--store", str(path), "sync-addresses", "--apply", "--concurrency", "1"]) == 0
    assert JsonContactStore(path).find_unique("r1")["city"] == "Navi Mumbai"
