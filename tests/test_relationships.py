import pytest

from contact_directory.relationships import (
    classify_phone_type,
    classify_relationship,
    clean_relationship_label,
)


@pytest.mark.parametrize(
    "position, label, expected",
    [
        (0, "", "mobile"),
        (3, None, "mobile"),
        (4, "", "office"),
        (5, "", "residence"),
        (9, "", "other"),
        (0, "Office", "office"),
        (0, "Home", "residence"),
        (4, "Fax", "fax"),
        (5, "Cell", "mobile"),
        (5, "Work cell", "office"),
    ],
)
def test_classify_phone_type(position, label, expected):
    assert classify_phone_type(position, label) == expected


@pytest.mark.parametrize(
    "label, expected",
    [
        ("Husband", "spouse"),
        ("Son Rahul", "child"),
        ("Mother", "parent"),
        ("Mother-in-law", "in_law"),
        ("brother in law Vijay", "in_law"),
        ("Grandson Aarav", "grandchild"),
        ("Grandmother", "grandparent"),
        ("Sister", "sibling"),
        ("Cousin Meera", "extended_family"),
        ("Office", "colleague"),
        ("Secretary", "assistant"),
        ("Manager", "supervisor"),
        ("Partner", "business_partner"),
        ("Customer", "client"),
        ("Friend", "friend"),
        ("Neighbour", "neighbor"),
        ("Ramesh", "related"),
        ("", "related"),
        (None, "related"),
    ],
)
def test_classify_relationship(label, expected):
    assert classify_relationship(label) == expected


def test_clean_relationship_label_extracts_names():
    assert clean_relationship_label("Son Rahul") == "Rahul"
    assert clean_relationship_label("wife of SUNIL") == "Sunil"
    assert clean_relationship_label("Mother-in-law Kamla Devi") == "Kamla Devi"
    assert clean_relationship_label("(Driver) Ramu") == "Driver Ramu"
    assert clean_relationship_label("Friend-Suresh") == "Suresh"


def test_clean_relationship_label_returns_none_for_bare_relationships():
    assert clean_relationship_label("Husband") is None
    assert clean_relationship_label("Home") is None
    assert clean_relationship_label("Office Mobile") is None
    assert clean_relationship_label("Son 2") is None
    assert clean_relationship_label("") is None
    assert clean_relationship_label(None) is None
