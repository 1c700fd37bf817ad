from __future__ import annotations

import argparse
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .common import load_config, utcnow
from .logging_utils import configure_logging
from .normalization import clean_human_string
from .store import ContactStore, JsonContactStore, TransientStoreError, with_retry

logger = logging.getLogger(__name__)

CASE_FIELDS = ("name", "address", "suburb", "city", "state", "country", "officeAddress", "address2")
CASE_LIST_FIELDS = ("alternateNames",)
PHONE_CASE_FIELDS = ("label", "country", "region")
RELATIONSHIP_CASE_FIELDS = ("description",)
ADDRESS_SYNC_FIELDS = ("address", "suburb", "city", "state", "country", "pincode")

DEFAULT_SCAN_BATCH = 500
DEFAULT_CONCURRENCY = 8


@dataclass
class MaintenanceReport:
    applied: bool = False
    scanned: int = 0
    eligible: int = 0
    updated: int = 0
    failed: int = 0
    skipped_no_parent: int = 0
    skipped_no_change: int = 0
    elapsed_seconds: float = 0.0
    changes: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "scanned": self.scanned,
            "eligible": self.eligible,
            "updated": self.updated,
            "failed": self.failed,
            "skippedNoParent": self.skipped_no_parent,
            "skippedNoChange": self.skipped_no_change,
            "elapsedSeconds": round(self.elapsed_seconds, 3),
        }


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _case_items(items: Sequence[Mapping[str, Any]], keys: Sequence[str]) -> Tuple[List[Dict[str, Any]], bool]:
    changed = False
    updated: List[Dict[str, Any]] = []
    for item in items:
        copy = dict(item)
        for key in keys:
            value = copy.get(key)
            if isinstance(value, str):
                cleaned = clean_human_string(value)
                if cleaned != value:
                    copy[key] = cleaned
                    changed = True
        updated.append(copy)
    return updated, changed


def case_patch(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Fields of ``document`` whose human-readable text changes after case correction."""
    patch: Dict[str, Any] = {}
    for key in CASE_FIELDS:
        value = document.get(key)
        if isinstance(value, str):
            cleaned = clean_human_string(value)
            if cleaned != value:
                patch[key] = cleaned

    for key in CASE_LIST_FIELDS:
        values = document.get(key)
        if isinstance(values, list):
            cleaned_list = [clean_human_string(v) if isinstance(v, str) else v for v in values]
            if cleaned_list != values:
                patch[key] = cleaned_list

    phones, phones_changed = _case_items(document.get("phones") or [], PHONE_CASE_FIELDS)
    if phones_changed:
        patch["phones"] = phones
    relationships, rels_changed = _case_items(
        document.get("relationships") or [], RELATIONSHIP_CASE_FIELDS
    )
    if rels_changed:
        patch["relationships"] = relationships
    return patch


def _scan(store: ContactStore, predicate: Dict[str, Any], batch_size: int):
    skip = 0
    while True:
        page = store.find_many(predicate, skip=skip, take=batch_size, order_by=[{"id": "asc"}])
        if not page:
            return
        yield from page
        skip += len(page)


def normalize_case(
    store: ContactStore,
    apply: bool = False,
    batch_size: int = DEFAULT_SCAN_BATCH,
    retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> MaintenanceReport:
    started = time.perf_counter()
    report = MaintenanceReport(applied=apply)
    logger.info("Case correction: %s, batch size %d", "APPLY" if apply else "DRY-RUN", batch_size)
    for document in _scan(store, {}, max(1, batch_size)):
        report.scanned += 1
        patch = case_patch(document)
        if not patch:
            report.skipped_no_change += 1
            continue
        report.eligible += 1
        report.changes.append((document["id"], patch))
        if not apply:
            logger.info("[DRY] %s (%s): %s", document.get("name"), document["id"], sorted(patch))
            continue
        update = {**patch, "lastUpdated": utcnow()}
        try:
            with_retry(
                lambda: store.update(document["id"], update),
                retries=retries,
                sleep=sleep,
                label=document.get("name") or document["id"],
            )
        except TransientStoreError as exc:
            report.failed += 1
            logger.error("Giving up on %s (%s): %s", document.get("name"), document["id"], exc)
            continue
        report.updated += 1
    report.elapsed_seconds = time.perf_counter() - started
    logger.info("Case correction summary: %s", report.to_dict())
    return report


def address_patch(
    child: Mapping[str, Any], parent: Optional[Mapping[str, Any]], force: bool = False
) -> Dict[str, Any]:
    """Address fields to copy from ``parent``; ``force`` also overwrites differing values."""
    patch: Dict[str, Any] = {}
    if not parent:
        return patch
    for key in ADDRESS_SYNC_FIELDS:
        child_value = child.get(key)
        parent_value = parent.get(key)
        if _is_empty(parent_value):
            continue
        if force and parent_value != child_value:
            patch[key] = parent_value
        elif not force and _is_empty(child_value):
            patch[key] = parent_value
    return patch


class ParentAddressSync:
    """Fill related contacts' address fields from their parent contact."""

    def __init__(
        self,
        store: ContactStore,
        apply: bool = False,
        force: bool = False,
        concurrency: int = DEFAULT_CONCURRENCY,
        retries: int = 3,
        base_delay: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.apply = apply
        self.force = force
        self.concurrency = max(1, concurrency)
        self.retries = retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.report = MaintenanceReport(applied=apply)
        self._parents: Dict[str, Optional[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _parent(self, parent_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            if parent_id in self._parents:
                return self._parents[parent_id]
        parent = self.store.find_unique(parent_id)
        with self._lock:
            self._parents[parent_id] = parent
        return parent

    def _count(self, attr: str) -> None:
        with self._lock:
            setattr(self.report, attr, getattr(self.report, attr) + 1)

    def process(self, child: Dict[str, Any]) -> None:
        self._count("scanned")
        parent_id = child.get("parentContactId")
        parent = self._parent(parent_id) if parent_id else None
        if not parent:
            self._count("skipped_no_parent")
            return
        patch = address_patch(child, parent, force=self.force)
        if not patch:
            self._count("skipped_no_change")
            return
        self._count("eligible")
        with self._lock:
            self.report.changes.append((child["id"], patch))
        preview = " | ".join(f'{k}: "{child.get(k) or ""}" -> "{v}"' for k, v in patch.items())
        if not self.apply:
            logger.info("[DRY] %s (%s) <= %s | %s", child.get("name"), child["id"], parent.get("name"), preview)
            return
        update = {**patch, "lastUpdated": utcnow()}
        try:
            with_retry(
                lambda: self.store.update(child["id"], update),
                retries=self.retries,
                base_delay=self.base_delay,
                sleep=self.sleep,
                label=child.get("name") or child["id"],
            )
        except TransientStoreError as exc:
            self._count("failed")
            logger.error("Giving up on %s (%s): %s", child.get("name"), child["id"], exc)
            return
        self._count("updated")
        logger.info("Updated %s (%s) | %s", child.get("name"), child["id"], preview)

    def run(self) -> MaintenanceReport:
        started = time.perf_counter()
        logger.info(
            "Parent address sync: %s, force=%s, concurrency=%d",
            "APPLY" if self.apply else "DRY-RUN",
            self.force,
            self.concurrency,
        )
        children = list(_scan(self.store, {"NOT": {"parentContactId": None}}, DEFAULT_SCAN_BATCH))
        if self.concurrency == 1:
            for child in children:
                self.process(child)
        else:
            with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                list(executor.map(self.process, children))
        self.report.elapsed_seconds = time.perf_counter() - started
        logger.info("Parent address sync summary: %s", self.report.to_dict())
        return self.report


def sync_parent_addresses(store: ContactStore, **kwargs: Any) -> MaintenanceReport:
    return ParentAddressSync(store, **kwargs).run()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Contact store maintenance tasks.")
    parser.add_argument("--config", type=str, default=None, help="Path to YAML config.")
    parser.add_argument("--store", type=str, default=None, help="Path to the JSON contact store.")
    parser.add_argument("--log-level", type=str, default=None, help="Override logging level")
    parser.add_argument("--log-file", type=str, default=None, help="Also append log records to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    case_parser = subparsers.add_parser("normalize-case", help="Title-case names and addresses.")
    case_parser.add_argument("--apply", action="store_true", help="Write changes (default: dry run).")
    case_parser.add_argument("--batch-size", type=int, default=DEFAULT_SCAN_BATCH)

    sync_parser = subparsers.add_parser("sync-addresses", help="Copy parent addresses to related contacts.")
    sync_parser.add_argument("--apply", action="store_true", help="Write changes (default: dry run).")
    sync_parser.add_argument("--force", action="store_true", help="Overwrite differing values.")
    sync_parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY)
    args = parser.parse_args(argv)

    config = load_config(args)
    configure_logging(config, level_override=args.log_level)
    store = JsonContactStore(config.outputs.store_path)

    if args.command == "normalize-case":
        report = normalize_case(
            store, apply=args.apply, batch_size=args.batch_size, retries=config.ingestion.max_retries
        )
    else:
        report = sync_parent_addresses(
            store,
            apply=args.apply,
            force=args.force,
            concurrency=args.concurrency,
            retries=config.ingestion.max_retries,
            base_delay=config.ingestion.retry_base_delay,
        )

    if args.apply:
        store.save()
    print(report.to_dict())
    return 0 if report.failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
