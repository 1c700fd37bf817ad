"""
Compile loosely-typed search parameters into store predicates.

Input comes from query strings or JSON bodies, so every value may arrive as a
string, a native bool/int, or a list of repeated values. Normalization never
raises: unknown enum values fall back to defaults and unparseable booleans or
dates are treated as absent.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from .store import ContactStore, StoreError

logger = logging.getLogger(__name__)

FILTER_VALUES = ("all", "main", "related", "duplicates")
TEXT_FILTER_FIELDS = ("city", "state", "country", "suburb", "pincode", "status")
PRESENCE_FLAGS = {
    "hasEmails": "emails",
    "hasPhones": "phones",
    "hasRelationships": "relationships",
}
SCALAR_PRESENCE_FLAGS = {
    "hasAddress": "address",
    "hasAvatar": "avatarUrl",
    "hasParent": "parentContactId",
}
MISSING_FLAGS = {
    "missingCity": "city",
    "missingState": "state",
    "missingCountry": "country",
    "missingCategory": "category",
    "missingPincode": "pincode",
}
VALIDITY_FLAGS = {
    "validPhonesOnly": "phones",
    "validEmailsOnly": "emails",
}
DATE_FILTERS = {
    "createdAfter": ("createdAt", "gte"),
    "createdBefore": ("createdAt", "lte"),
    "updatedAfter": ("lastUpdated", "gte"),
    "updatedBefore": ("lastUpdated", "lte"),
}

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_PAGE = 1000
MAX_LIMIT = 100

DEFAULT_ORDER: List[Dict[str, str]] = [
    {"name": "asc"},
    {"isMainContact": "desc"},
    {"lastUpdated": "desc"},
]
SORT_ORDERS: Dict[str, List[Dict[str, str]]] = {
    "name": [{"name": "asc"}, {"isMainContact": "desc"}],
    "recent": [{"createdAt": "desc"}],
    "updated": [{"lastUpdated": "desc"}],
    "category": [{"category": "asc"}, {"name": "asc"}],
}
RESULT_INCLUDE = {"parentContact": True, "childContacts": True}

_EMPTY = [None, ""]
LEADING_INT_RE = re.compile(r"\s*[+-]?\d+")


@dataclass
class ContactFilters:
    search: Optional[str] = None
    filter: str = "all"
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    suburb: Optional[str] = None
    pincode: Optional[str] = None
    status: Optional[str] = None
    categories: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    hasEmails: Optional[bool] = None
    hasPhones: Optional[bool] = None
    hasAddress: Optional[bool] = None
    hasAvatar: Optional[bool] = None
    hasParent: Optional[bool] = None
    hasRelationships: Optional[bool] = None
    missingCity: Optional[bool] = None
    missingState: Optional[bool] = None
    missingCountry: Optional[bool] = None
    missingCategory: Optional[bool] = None
    missingPincode: Optional[bool] = None
    validPhonesOnly: Optional[bool] = None
    validEmailsOnly: Optional[bool] = None
    createdAfter: Optional[datetime] = None
    createdBefore: Optional[datetime] = None
    updatedAfter: Optional[datetime] = None
    updatedBefore: Optional[datetime] = None
    sortBy: Optional[str] = None
    skipPagination: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class Pagination:
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    def to_dict(self) -> Dict[str, int]:
        return {"page": self.page, "limit": self.limit}


@dataclass
class CompiledQuery:
    filters: ContactFilters
    predicate: Dict[str, Any]
    pagination: Pagination
    order_by: List[Dict[str, str]] = field(default_factory=lambda: list(DEFAULT_ORDER))


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        for item in value:
            if item is not None and str(item).strip():
                return item
        return None
    return value


def _text(value: Any) -> Optional[str]:
    value = _first(value)
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _bool(value: Any) -> Optional[bool]:
    value = _first(value)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        token = value.strip().lower()
        if token == "true":
            return True
        if token == "false":
            return False
    return None


def _string_set(*values: Any) -> Optional[List[str]]:
    items: List[str] = []
    for value in values:
        if value is None:
            continue
        raw_items = value if isinstance(value, (list, tuple, set)) else [value]
        for raw in raw_items:
            if raw is None:
                continue
            for part in str(raw).split(","):
                part = part.strip()
                if part and part not in items:
                    items.append(part)
    return items or None


def _date(value: Any) -> Optional[datetime]:
    value = _first(value)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        parsed = pd.to_datetime(text, errors="coerce", utc=True)
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def _clamped_int(value: Any, default: int, upper: int) -> int:
    """Leading integer of ``value`` (``"2.5"`` and ``"50abc"`` read as 2 and 50), clamped to [1, upper]."""
    value = _first(value)
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return default
        number = int(value)
    else:
        match = LEADING_INT_RE.match(str(value))
        if not match:
            return default
        number = int(match.group(0))
    return max(1, min(number, upper))


def normalize_filter_params(params: Optional[Mapping[str, Any]]) -> ContactFilters:
    """Turn raw request parameters into a canonical ``ContactFilters``."""
    params = params or {}
    filter_value = (_text(params.get("filter")) or "all").lower()
    sort_by = _text(params.get("sortBy"))

    filters = ContactFilters(
        search=_text(params.get("search")),
        filter=filter_value if filter_value in FILTER_VALUES else "all",
        categories=_string_set(params.get("category"), params.get("categories")),
        tags=_string_set(params.get("tags")),
        sortBy=sort_by if sort_by in SORT_ORDERS else None,
        skipPagination=_bool(params.get("skipPagination")),
    )
    for name in TEXT_FILTER_FIELDS:
        setattr(filters, name, _text(params.get(name)))
    for name in (*PRESENCE_FLAGS, *SCALAR_PRESENCE_FLAGS, *MISSING_FLAGS, *VALIDITY_FLAGS):
        setattr(filters, name, _bool(params.get(name)))
    for name in DATE_FILTERS:
        setattr(filters, name, _date(params.get(name)))
    return filters


def normalize_pagination(params: Optional[Mapping[str, Any]]) -> Pagination:
    params = params or {}
    return Pagination(
        page=_clamped_int(params.get("page"), DEFAULT_PAGE, MAX_PAGE),
        limit=_clamped_int(params.get("limit"), DEFAULT_LIMIT, MAX_LIMIT),
    )


def _insensitive(value: str) -> Dict[str, Any]:
    return {"contains": value, "mode": "insensitive"}


def search_fragment(term: str) -> Dict[str, Any]:
    words = [word for word in term.split() if word]
    return {
        "OR": [
            {"name": _insensitive(term)},
            {"phones": {"some": {"number": {"contains": re.sub(r"\s+", "", term)}}}},
            {"emails": {"some": {"address": _insensitive(term)}}},
            {"city": _insensitive(term)},
            {"state": _insensitive(term)},
            {"category": _insensitive(term)},
            {"status": _insensitive(term)},
            {"tags": {"hasSome": words}},
            {"alternateNames": {"has": term}},
            {"notes": _insensitive(term)},
        ]
    }


def compile_predicate(filters: ContactFilters) -> Dict[str, Any]:
    """
    Build the store predicate for ``filters``.

    The search OR-group comes first and every other fragment is ANDed with it,
    so search only ever narrows what the remaining filters select. Returns
    ``{}`` when nothing constrains the result.
    """
    fragments: List[Dict[str, Any]] = []
    if filters.search:
        fragments.append(search_fragment(filters.search))

    if filters.filter == "main":
        fragments.append({"isMainContact": True})
    elif filters.filter == "related":
        fragments.append({"isMainContact": False})
    elif filters.filter == "duplicates":
        fragments.append({"duplicateGroup": {"not": None}})

    for name in TEXT_FILTER_FIELDS:
        value = getattr(filters, name)
        if value:
            fragments.append({name: _insensitive(value)})

    if filters.categories:
        fragments.append({"category": {"in": list(filters.categories), "mode": "insensitive"}})
    if filters.tags:
        fragments.append({"tags": {"hasSome": list(filters.tags)}})

    for flag, field_name in PRESENCE_FLAGS.items():
        value = getattr(filters, flag)
        if value is True:
            fragments.append({field_name: {"some": {}}})
        elif value is False:
            fragments.append({field_name: {"none": {}}})

    for flag, field_name in SCALAR_PRESENCE_FLAGS.items():
        value = getattr(filters, flag)
        if value is True:
            fragments.append({field_name: {"notIn": list(_EMPTY)}})
        elif value is False:
            fragments.append({field_name: {"in": list(_EMPTY)}})

    for flag, field_name in MISSING_FLAGS.items():
        if getattr(filters, flag) is True:
            fragments.append({field_name: {"in": list(_EMPTY)}})

    for flag, field_name in VALIDITY_FLAGS.items():
        if getattr(filters, flag) is True:
            fragments.append({field_name: {"some": {"isValid": True}}})

    for flag, (field_name, op) in DATE_FILTERS.items():
        value = getattr(filters, flag)
        if value is not None:
            fragments.append({field_name: {op: value}})

    if not fragments:
        return {}
    return {"AND": fragments}


def order_for(sort_by: Optional[str]) -> List[Dict[str, str]]:
    return [dict(clause) for clause in SORT_ORDERS.get(sort_by or "", DEFAULT_ORDER)]


def compile_filters(params: Optional[Mapping[str, Any]]) -> CompiledQuery:
    filters = normalize_filter_params(params)
    return CompiledQuery(
        filters=filters,
        predicate=compile_predicate(filters),
        pagination=normalize_pagination(params),
        order_by=order_for(filters.sortBy),
    )


def _serializable_filters(filters: ContactFilters) -> Dict[str, Any]:
    payload = filters.to_dict()
    for key, value in payload.items():
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
    return payload


def search_contacts(
    store: ContactStore,
    params: Optional[Mapping[str, Any]] = None,
    include: Optional[Dict[str, bool]] = None,
) -> Dict[str, Any]:
    """Run a compiled search and return the paged result envelope."""
    started = time.perf_counter()
    query = compile_filters(params)
    pagination = query.pagination
    skip_pagination = bool(query.filters.skipPagination)

    try:
        contacts = store.find_many(
            query.predicate,
            skip=0 if skip_pagination else pagination.skip,
            take=None if skip_pagination else pagination.limit,
            order_by=query.order_by,
            include=RESULT_INCLUDE if include is None else include,
        )
        total = store.count(query.predicate)
    except StoreError as exc:
        logger.error("Contact search failed: %s", exc)
        contacts, total = [], 0

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    logger.debug("Search matched %d contacts in %.2f ms", total, elapsed_ms)
    return {
        "contacts": contacts,
        "total": total,
        "totalPages": math.ceil(total / pagination.limit) if total else 0,
        "currentPage": pagination.page,
        "hasNextPage": pagination.page * pagination.limit < total,
        "hasPrevPage": pagination.page > 1,
        "searchTime": elapsed_ms,
        "metadata": {
            "appliedFilters": _serializable_filters(query.filters),
            "pagination": pagination.to_dict(),
            "orderBy": query.order_by,
            "skipPagination": skip_pagination,
        },
    }
