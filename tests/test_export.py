from datetime import datetime, timezone
from io import BytesIO

import pandas as pd
import pytest
from openpyxl import load_workbook

from contact_directory.export import (
    CSV_CONTENT_TYPE,
    XLSX_CONTENT_TYPE,
    _export_params,
    build_export_frame,
    export_contacts,
    resolve_fields,
)
from contact_directory.store import MemoryContactStore

ALL_COLUMNS = [
    "Name",
    "Status",
    "Primary Phone",
    "All Phones",
    "Primary Email",
    "All Emails",
    "Address",
    "Suburb",
    "City",
    "Pincode",
    "State",
    "Country",
    "Category",
    "Office Address",
    "Address 2",
    "Tags",
    "Notes",
    "Created Date",
    "Last Updated",
    "Parent Contact",
    "Related Contacts",
]


@pytest.fixture
def store():
    created = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)
    return MemoryContactStore(
        [
            {
                "id": "m1",
                "name": "Asha Shah",
                "isMainContact": True,
                "parentContactId": None,
                "city": "Mumbai",
                "tags": ["vip", "family"],
                "phones": [
                    {"id": "phone_0", "number": "+91 98765 43210", "isPrimary": True},
                    {"id": "phone_1", "number": "+91 91234 56780", "isPrimary": False},
                ],
                "emails": [{"id": "email_0", "address": "asha@shah.com", "isPrimary": True}],
                "createdAt": created,
                "lastUpdated": created,
            },
            {
                "id": "r1",
                "name": "Rahul",
                "isMainContact": False,
                "parentContactId": "m1",
                "phones": [{"id": "phone_0", "number": "+91 98765 00001", "isPrimary": True}],
                "emails": [],
                "createdAt": created,
                "lastUpdated": created,
            },
        ]
    )


def _read_csv(content):
    return pd.read_csv(BytesIO(content), dtype=str, keep_default_na=False)


def test_resolve_fields_drops_unknown_and_defaults_to_all():
    assert resolve_fields(["name", "bogus", "phones"]) == ["name", "phones"]
    assert resolve_fields(["bogus"]) == resolve_fields(None)
    assert len(resolve_fields([])) == 19


def test_build_export_frame_with_no_contacts_keeps_headers():
    frame = build_export_frame([], ["name", "emails"])
    assert list(frame.columns) == ["Name", "Primary Email", "All Emails"]
    assert len(frame) == 0


def test_export_params_map_request_aliases():
    params = _export_params({"searchTerm": "asha", "isMainContact": "true", "fields": ["name"], "format": "csv"})
    assert params == {"search": "asha", "filter": "main", "skipPagination": True}
    nested = _export_params({"filters": {"city": "Pune", "skipPagination": "false"}})
    assert nested == {"city": "Pune", "skipPagination": "false"}


def test_csv_export_with_selected_fields(store):
    result = export_contacts(store, {"format": "csv", "fields": ["name", "phones", "parentContact", "bogus"]})
    assert result.content_type == CSV_CONTENT_TYPE
    assert result.filename.startswith("contacts-export-")
    assert result.filename.endswith(".csv")
    assert result.row_count == 2

    frame = _read_csv(result.content)
    assert list(frame.columns) == ["Name", "Primary Phone", "All Phones", "Parent Contact"]
    asha, rahul = frame.to_dict("records")
    assert asha["Primary Phone"] == "+91 98765 43210"
    assert asha["All Phones"] == "+91 98765 43210; +91 91234 56780"
    assert asha["Parent Contact"] == ""
    assert rahul["Parent Contact"] == "Asha Shah"


def test_export_applies_filters(store):
    result = export_contacts(store, {"format": "csv", "fields": ["name"], "filters": {"search": "rahul"}})
    assert _read_csv(result.content)["Name"].tolist() == ["Rahul"]

    related = export_contacts(store, {"format": "csv", "fields": ["name"], "isMainContact": False})
    assert _read_csv(related.content)["Name"].tolist() == ["Rahul"]


def test_export_can_be_paginated(store):
    result = export_contacts(store, {"format": "csv", "skipPagination": "false", "limit": "1", "page": "2"})
    assert result.row_count == 1
    assert _read_csv(result.content)["Name"].tolist() == ["Rahul"]


def test_xlsx_export_layout(store):
    result = export_contacts(store, {"filter": "main"})
    assert result.content_type == XLSX_CONTENT_TYPE
    assert result.filename.endswith(".xlsx")

    frame = pd.read_excel(BytesIO(result.content), sheet_name="Contacts")
    assert list(frame.columns) == ALL_COLUMNS
    [row] = frame.to_dict("records")
    assert row["Name"] == "Asha Shah"
    assert row["Tags"] == "vip; family"
    assert row["Created Date"] == "2024-01-05"
    assert row["Primary Email"] == "asha@shah.com"
    assert row["Related Contacts"] == 1

    sheet = load_workbook(BytesIO(result.content))["Contacts"]
    assert sheet.freeze_panes == "A2"
    assert sheet["A1"].font.bold is True
    assert sheet.column_dimensions["A"].width <= 40


def test_unknown_format_falls_back_to_xlsx(store):
    result = export_contacts(store, {"format": "pdf", "fields": ["name"]})
    assert result.filename.endswith(".xlsx")
