from contact_directory.duplicates import assign_duplicate_groups, find_duplicate_phones
from contact_directory.models import Contact, Phone


def test_assign_duplicate_groups_stamps_shared_names_only():
    contacts = [
        Contact(id="1", name="John Smith"),
        Contact(id="2", name="john smith"),
        Contact(id="3", name="JohnSmith"),
        Contact(id="4", name="Jane Smith"),
    ]
    groups = assign_duplicate_groups(contacts)
    assert list(groups) == ["johnsmith"]
    assert [c.duplicate_group for c in contacts] == ["johnsmith", "johnsmith", "johnsmith", None]


def test_assign_duplicate_groups_handles_empty_input():
    assert assign_duplicate_groups([]) == {}


def test_find_duplicate_phones_groups_by_normalized_number():
    contacts = [
        Contact(id="a", name="Asha Shah", phones=[Phone(id="phone_0", number="+91 98765 43210")]),
        {
            "id": "b",
            "name": "Husband",
            "isMainContact": False,
            "parentContactId": "a",
            "phones": [{"id": "phone_0", "number": "09876543210"}],
        },
        Contact(id="c", name="R Patel", phones=[Phone(id="phone_0", number="+91 98765 00000")]),
    ]
    report = find_duplicate_phones(contacts)
    assert len(report) == 1
    group = report[0]
    assert group["normalized"] == "+919876543210"
    assert group["count"] == 2
    assert [member["id"] for member in group["contacts"]] == ["a", "b"]
    assert group["contacts"][1]["parentContactId"] == "a"


def test_same_contact_listing_a_number_twice_is_not_a_duplicate():
    contact = Contact(
        id="a",
        name="Asha Shah",
        phones=[Phone(id="phone_0", number="9876543210"), Phone(id="phone_1", number="+91 98765 43210")],
    )
    assert find_duplicate_phones([contact]) == []
