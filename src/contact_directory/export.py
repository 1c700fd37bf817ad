from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.utils.dataframe import dataframe_to_rows

from .common import load_config, utcnow
from .filters import RESULT_INCLUDE, compile_filters
from .logging_utils import configure_logging
from .store import ContactStore, JsonContactStore

logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_CONTENT_TYPE = "text/csv"
SHEET_NAME = "Contacts"
MAX_COLUMN_WIDTH = 40


def _text(key: str) -> Callable[[Mapping[str, Any]], Dict[str, Any]]:
    def project(contact: Mapping[str, Any]) -> Dict[str, Any]:
        return {EXPORT_TITLES[key]: contact.get(key) or ""}

    return project


def _iso_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if value:
        return str(value).split("T")[0]
    return ""


def _primary(items: Sequence[Mapping[str, Any]], attr: str) -> str:
    for item in items:
        if item.get("isPrimary"):
            return item.get(attr) or ""
    return ""


def _phones(contact: Mapping[str, Any]) -> Dict[str, Any]:
    phones = contact.get("phones") or []
    return {
        "Primary Phone": _primary(phones, "number"),
        "All Phones": "; ".join(p.get("number") or "" for p in phones),
    }


def _emails(contact: Mapping[str, Any]) -> Dict[str, Any]:
    emails = contact.get("emails") or []
    return {
        "Primary Email": _primary(emails, "address"),
        "All Emails": "; ".join(e.get("address") or "" for e in emails),
    }


EXPORT_TITLES = {
    "name": "Name",
    "status": "Status",
    "address": "Address",
    "suburb": "Suburb",
    "city": "City",
    "pincode": "Pincode",
    "state": "State",
    "country": "Country",
    "category": "Category",
    "officeAddress": "Office Address",
    "address2": "Address 2",
    "notes": "Notes",
}

EXPORT_FIELDS: Dict[str, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
    "name": _text("name"),
    "status": _text("status"),
    "phones": _phones,
    "emails": _emails,
    "address": _text("address"),
    "suburb": _text("suburb"),
    "city": _text("city"),
    "pincode": _text("pincode"),
    "state": _text("state"),
    "country": _text("country"),
    "category": _text("category"),
    "officeAddress": _text("officeAddress"),
    "address2": _text("address2"),
    "tags": lambda c: {"Tags": "; ".join(c.get("tags") or [])},
    "notes": _text("notes"),
    "createdAt": lambda c: {"Created Date": _iso_date(c.get("createdAt"))},
    "lastUpdated": lambda c: {"Last Updated": _iso_date(c.get("lastUpdated"))},
    "parentContact": lambda c: {"Parent Contact": (c.get("parentContact") or {}).get("name") or ""},
    "childContactsCount": lambda c: {"Related Contacts": len(c.get("childContacts") or [])},
}


@dataclass
class ExportResult:
    content: bytes
    filename: str
    content_type: str
    row_count: int


def resolve_fields(fields: Optional[Sequence[str]]) -> List[str]:
    """Known fields in request order; unknown names are dropped, nothing means everything."""
    selected = [name for name in (fields or []) if name in EXPORT_FIELDS]
    unknown = [name for name in (fields or []) if name not in EXPORT_FIELDS]
    if unknown:
        logger.info("Ignoring unknown export field(s): %s", ", ".join(unknown))
    return selected or list(EXPORT_FIELDS)


def build_export_frame(contacts: Sequence[Mapping[str, Any]], fields: Optional[Sequence[str]] = None) -> pd.DataFrame:
    selected = resolve_fields(fields)
    columns: List[str] = []
    for name in selected:
        for title in EXPORT_FIELDS[name]({}).keys():
            if title not in columns:
                columns.append(title)
    records = []
    for contact in contacts:
        row: Dict[str, Any] = {}
        for name in selected:
            row.update(EXPORT_FIELDS[name](contact))
        records.append(row)
    return pd.DataFrame.from_records(records, columns=columns)


def _export_params(request: Mapping[str, Any]) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        key: value for key, value in request.items() if key not in ("fields", "format", "filters")
    }
    nested = request.get("filters") or {}
    if isinstance(nested, Mapping):
        params.update(nested)
    if params.get("searchTerm") and not params.get("search"):
        params["search"] = params.pop("searchTerm")
    is_main = params.pop("isMainContact", None)
    if is_main is not None and not params.get("filter"):
        params["filter"] = "main" if is_main in (True, "true") else "related"
    if params.get("skipPagination") is None:
        params["skipPagination"] = True
    return params


def write_xlsx(frame: pd.DataFrame) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_NAME
    for r_idx, row_data in enumerate(dataframe_to_rows(frame, index=False, header=True), 1):
        for c_idx, value in enumerate(row_data, 1):
            cell = ws.cell(row=r_idx, column=c_idx, value=value)
            if r_idx == 1:
                cell.fill = PatternFill("solid", fgColor="4472C4")
                cell.font = Font(bold=True, color="FFFFFF")

    for c_idx, column in enumerate(frame.columns, 1):
        values = [str(column)] + [str(v) for v in frame.iloc[:50, c_idx - 1].tolist()]
        ws.column_dimensions[get_column_letter(c_idx)].width = min(
            max(len(v) for v in values) + 3, MAX_COLUMN_WIDTH
        )
    ws.freeze_panes = "A2"

    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def export_contacts(store: ContactStore, request: Optional[Mapping[str, Any]] = None) -> ExportResult:
    """
    Select contacts with the search filter shape and render them as CSV or XLSX.

    ``request`` carries ``fields``, ``format`` (``xlsx`` default, or ``csv``),
    ``skipPagination`` (default true for exports) and either a nested
    ``filters`` object or flat filter flags.
    """
    request = request or {}
    export_format = str(request.get("format") or "xlsx").strip().lower()
    if export_format not in ("xlsx", "csv"):
        logger.warning("Unknown export format %r, using xlsx", export_format)
        export_format = "xlsx"

    query = compile_filters(_export_params(request))
    skip_pagination = bool(query.filters.skipPagination)
    contacts = store.find_many(
        query.predicate,
        skip=0 if skip_pagination else query.pagination.skip,
        take=None if skip_pagination else query.pagination.limit,
        order_by=query.order_by,
        include=RESULT_INCLUDE,
    )
    frame = build_export_frame(contacts, request.get("fields"))

    stamp = int(utcnow().timestamp() * 1000)
    if export_format == "csv":
        content = frame.to_csv(index=False).encode("utf-8")
        content_type = CSV_CONTENT_TYPE
    else:
        content = write_xlsx(frame)
        content_type = XLSX_CONTENT_TYPE
    filename = f"contacts-export-{stamp}.{export_format}"
    logger.info("Exported %d contact(s) as %s", len(frame), export_format)
    return ExportResult(content=content, filename=filename, content_type=content_type, row_count=len(frame))


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Export contacts to CSV or XLSX.")
    parser.add_argument("--config", type=str, default=None, help="Path to YAML config.")
    parser.add_argument("--store", type=str, default=None, help="Path to the JSON contact store.")
    parser.add_argument("--out-dir", type=str, default=None)
    parser.add_argument("--format", type=str, choices=["xlsx", "csv"], default=None)
    parser.add_argument("--fields", nargs="*", default=None)
    parser.add_argument("--search", type=str, default=None)
    parser.add_argument("--filter", type=str, default=None, help="all, main, related or duplicates")
    parser.add_argument("--city", type=str, default=None)
    parser.add_argument("--state", type=str, default=None)
    parser.add_argument("--country", type=str, default=None)
    parser.add_argument("--category", nargs="*", default=None)
    parser.add_argument("--tags", nargs="*", default=None)
    parser.add_argument("--log-level", type=str, default=None, help="Override logging level")
    parser.add_argument("--log-file", type=str, default=None, help="Also append log records to this file")
    args = parser.parse_args(argv)

    config = load_config(args)
    configure_logging(config, level_override=args.log_level)
    store = JsonContactStore(config.outputs.store_path)

    request: Dict[str, Any] = {
        "format": config.export.format,
        "fields": config.export.fields,
        "search": args.search,
        "filter": args.filter,
        "city": args.city,
        "state": args.state,
        "country": args.country,
        "categories": args.category,
        "tags": args.tags,
    }
    result = export_contacts(store, request)

    out_dir = Path(config.outputs.dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / result.filename
    out_path.write_bytes(result.content)
    logger.info("Saved: %s", out_path)
    print(out_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
