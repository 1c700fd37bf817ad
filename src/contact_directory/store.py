"""
Document-store seam for contacts.

The ingestion pipeline, the filter compiler and the export path only talk to
``ContactStore``. ``MemoryContactStore`` evaluates the same predicate trees the
filter compiler emits (``AND`` / ``OR`` / ``NOT`` plus per-field operators such
as ``contains``, ``in``, ``some``, ``hasSome``) so everything can be exercised
without a database. ``JsonContactStore`` adds file persistence for the CLIs.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import random
import threading
import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, TypeVar

from .common import new_object_id, utcnow
from .models import parse_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATETIME_FIELDS = ("createdAt", "lastUpdated")
_FIELD_OPERATORS = {
    "equals",
    "not",
    "in",
    "notIn",
    "contains",
    "startsWith",
    "endsWith",
    "gt",
    "gte",
    "lt",
    "lte",
    "mode",
    "some",
    "none",
    "every",
    "has",
    "hasSome",
    "hasEvery",
    "isEmpty",
}


class StoreError(Exception):
    """Base class for persistence failures."""


class TransientStoreError(StoreError):
    """A write that may succeed when retried (timeouts, write conflicts)."""


class ConstraintViolationError(StoreError):
    """A write rejected permanently, e.g. a duplicate primary key."""


class ContactNotFoundError(StoreError):
    pass


def with_retry(
    fn: Callable[[], T],
    retries: int = 3,
    base_delay: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
    jitter: float = 0.1,
    label: str = "store write",
) -> T:
    """
    Call ``fn``, retrying ``TransientStoreError`` up to ``retries`` times.

    Delays grow as ``base_delay * 2 ** (attempt - 1)`` plus up to ``jitter``
    seconds of random noise. Other exceptions propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TransientStoreError as exc:
            attempt += 1
            if attempt > retries:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            if jitter:
                delay += random.uniform(0, jitter)
            logger.warning(
                "Transient failure on %s (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                retries + 1,
                delay,
                exc,
            )
            sleep(delay)


class ContactStore(Protocol):
    def find_many(
        self,
        predicate: Dict[str, Any],
        skip: int = 0,
        take: Optional[int] = None,
        order_by: Optional[Sequence[Dict[str, str]]] = None,
        include: Optional[Dict[str, bool]] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def count(self, predicate: Dict[str, Any]) -> int:
        ...

    def create(self, document: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def create_many(self, documents: Sequence[Dict[str, Any]]) -> int:
        ...

    def update(self, contact_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    def find_unique(self, contact_id: str) -> Optional[Dict[str, Any]]:
        ...


def _as_aware(value: Any) -> Any:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return value


def _fold(value: Any, insensitive: bool) -> Any:
    if insensitive and isinstance(value, str):
        return value.lower()
    return value


def _is_operator_block(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and set(condition) <= _FIELD_OPERATORS


def _compare(value: Any, bound: Any, op: str) -> bool:
    value = _as_aware(value)
    bound = _as_aware(bound)
    if value is None or bound is None:
        return False
    try:
        if op == "gt":
            return value > bound
        if op == "gte":
            return value >= bound
        if op == "lt":
            return value < bound
        return value <= bound
    except TypeError:
        return False


def _match_field(value: Any, condition: Any) -> bool:
    if not _is_operator_block(condition):
        return _as_aware(value) == _as_aware(condition)

    insensitive = condition.get("mode") == "insensitive"
    for op, operand in condition.items():
        if op == "mode":
            continue
        if op == "equals":
            if _fold(value, insensitive) != _fold(operand, insensitive):
                return False
        elif op == "not":
            if _is_operator_block(operand):
                if _match_field(value, operand):
                    return False
            elif _fold(value, insensitive) == _fold(operand, insensitive):
                return False
        elif op == "in":
            if _fold(value, insensitive) not in [_fold(item, insensitive) for item in operand]:
                return False
        elif op == "notIn":
            if _fold(value, insensitive) in [_fold(item, insensitive) for item in operand]:
                return False
        elif op in ("contains", "startsWith", "endsWith"):
            if not isinstance(value, str):
                return False
            haystack = _fold(value, insensitive)
            needle = _fold(str(operand), insensitive)
            if op == "contains" and needle not in haystack:
                return False
            if op == "startsWith" and not haystack.startswith(needle):
                return False
            if op == "endsWith" and not haystack.endswith(needle):
                return False
        elif op in ("gt", "gte", "lt", "lte"):
            if not _compare(value, operand, op):
                return False
        elif op == "some":
            items = value or []
            if not any(matches(item, operand) for item in items):
                return False
        elif op == "none":
            items = value or []
            if any(matches(item, operand) for item in items):
                return False
        elif op == "every":
            items = value or []
            if not all(matches(item, operand) for item in items):
                return False
        elif op == "has":
            if operand not in (value or []):
                return False
        elif op == "hasSome":
            if not set(value or []) & set(operand or []):
                return False
        elif op == "hasEvery":
            if not set(operand or []) <= set(value or []):
                return False
        elif op == "isEmpty":
            if bool(operand) != (len(value or []) == 0):
                return False
    return True


def matches(document: Dict[str, Any], predicate: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a predicate tree against one document."""
    if not predicate:
        return True
    for key, condition in predicate.items():
        if key == "AND":
            clauses = condition if isinstance(condition, list) else [condition]
            if not all(matches(document, clause) for clause in clauses):
                return False
        elif key == "OR":
            if not any(matches(document, clause) for clause in condition):
                return False
        elif key == "NOT":
            clauses = condition if isinstance(condition, list) else [condition]
            if any(matches(document, clause) for clause in clauses):
                return False
        elif not _match_field(document.get(key), condition):
            return False
    return True


def _sort_value(value: Any) -> tuple:
    value = _as_aware(value)
    if value is None:
        return (0, "")
    if isinstance(value, bool):
        return (1, int(value))
    return (1, value)


def sort_documents(
    documents: List[Dict[str, Any]], order_by: Optional[Sequence[Dict[str, str]]]
) -> List[Dict[str, Any]]:
    ordered = list(documents)
    for clause in reversed(list(order_by or [])):
        for field_name, direction in clause.items():
            ordered.sort(
                key=lambda doc, f=field_name: _sort_value(doc.get(f)),
                reverse=str(direction).lower() == "desc",
            )
    return ordered


class MemoryContactStore:
    def __init__(self, documents: Optional[Iterable[Dict[str, Any]]] = None):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        for document in documents or []:
            self.create(document)

    def __len__(self) -> int:
        return len(self._documents)

    def _with_includes(
        self, document: Dict[str, Any], include: Optional[Dict[str, bool]]
    ) -> Dict[str, Any]:
        result = copy.deepcopy(document)
        if not include:
            return result
        if include.get("parentContact"):
            parent_id = document.get("parentContactId")
            parent = self._documents.get(parent_id) if parent_id else None
            result["parentContact"] = copy.deepcopy(parent) if parent else None
        if include.get("childContacts"):
            result["childContacts"] = [
                copy.deepcopy(doc)
                for doc in self._documents.values()
                if doc.get("parentContactId") == document.get("id")
            ]
        return result

    def find_many(
        self,
        predicate: Dict[str, Any],
        skip: int = 0,
        take: Optional[int] = None,
        order_by: Optional[Sequence[Dict[str, str]]] = None,
        include: Optional[Dict[str, bool]] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            selected = [doc for doc in self._documents.values() if matches(doc, predicate)]
            selected = sort_documents(selected, order_by)
            end = None if take is None else skip + take
            return [self._with_includes(doc, include) for doc in selected[skip:end]]

    def count(self, predicate: Dict[str, Any]) -> int:
        with self._lock:
            return sum(1 for doc in self._documents.values() if matches(doc, predicate))

    def find_unique(self, contact_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._documents.get(contact_id)
            return copy.deepcopy(document) if document else None

    def create(self, document: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            stored = _decode_document(copy.deepcopy(document))
            contact_id = stored.get("id") or new_object_id()
            if contact_id in self._documents:
                raise ConstraintViolationError(f"Unique constraint failed on id {contact_id}")
            now = utcnow()
            stored["id"] = contact_id
            stored["createdAt"] = stored.get("createdAt") or now
            stored["lastUpdated"] = stored.get("lastUpdated") or now
            self._documents[contact_id] = stored
            return copy.deepcopy(stored)

    def create_many(self, documents: Sequence[Dict[str, Any]]) -> int:
        created = 0
        for document in documents:
            self.create(document)
            created += 1
        return created

    def update(self, contact_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            current = self._documents.get(contact_id)
            if current is None:
                return None
            changes = _decode_document(
                copy.deepcopy({k: v for k, v in patch.items() if k not in ("id", "createdAt")})
            )
            current.update(changes)
            current["lastUpdated"] = changes.get("lastUpdated") or utcnow()
            return copy.deepcopy(current)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_document(document: Dict[str, Any]) -> Dict[str, Any]:
    for field_name in DATETIME_FIELDS:
        value = document.get(field_name)
        if value is None:
            continue
        if isinstance(value, datetime):
            document[field_name] = _as_aware(value)
            continue
        parsed = parse_timestamp(value)
        if parsed is None:
            logger.warning("Unparseable %s on %s: %s", field_name, document.get("id"), value)
        document[field_name] = parsed
    return document


class JsonContactStore(MemoryContactStore):
    """``MemoryContactStore`` backed by a JSON file written on ``save()``."""

    def __init__(self, path: os.PathLike | str):
        self.path = Path(path)
        documents: List[Dict[str, Any]] = []
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as handle:
                documents = [_decode_document(doc) for doc in json.load(handle) or []]
            logger.info("Loaded %d contacts from %s", len(documents), self.path)
        super().__init__(documents)

    def save(self) -> None:
        with self._lock:
            payload = list(self._documents.values())
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2, default=_encode)
        logger.info("Saved %d contacts to %s", len(payload), self.path)
