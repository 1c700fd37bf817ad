from __future__ import annotations

import argparse
import json
import logging
import os
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .common import IdFactory, load_config, utcnow
from .config_loader import IngestionConfig
from .duplicates import assign_duplicate_groups
from .email_matching import match_emails
from .expansion import RecordExpander, SpreadsheetRow
from .logging_utils import configure_logging
from .models import Contact, Email, Phone, ensure_single_primary
from .normalization import (
    analyze_phone,
    extract_emails,
    is_valid_email,
    phone_digits,
    read_rows,
)
from .store import ContactNotFoundError, ContactStore, JsonContactStore, StoreError, with_retry

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20
MIN_PREPARSED_PHONE_DIGITS = 10
SLOW_CONTACT_MS = 100


class ImportStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class ImportRejectedError(ValueError):
    """The request cannot start: empty, over the row ceiling, or malformed."""


class RowValidationError(ValueError):
    pass


@dataclass
class ImportOptions:
    batch_size: int = 100
    max_batch_size: int = 200
    max_rows: int = 5000
    workers: int = 1
    max_retries: int = 3
    retry_base_delay: float = 0.25
    progress_every: int = 5
    update_existing: bool = False
    skip_validation: bool = False

    @classmethod
    def from_config(cls, config: IngestionConfig) -> "ImportOptions":
        return cls(
            batch_size=config.batch_size,
            max_batch_size=config.max_batch_size,
            max_rows=config.max_rows,
            workers=config.workers,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay,
            progress_every=config.progress_every,
            update_existing=config.update_existing,
            skip_validation=config.skip_validation,
        )

    def with_request(self, options: Optional[Mapping[str, Any]]) -> "ImportOptions":
        """Overlay the camelCase ``options`` object of an import request."""
        options = options or {}
        merged = ImportOptions(**self.__dict__)
        if options.get("batchSize") is not None:
            try:
                merged.batch_size = int(options["batchSize"])
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid batchSize %r", options["batchSize"])
        if options.get("skipValidation") is not None:
            merged.skip_validation = bool(options["skipValidation"])
        if options.get("updateExisting") is not None:
            merged.update_existing = bool(options["updateExisting"])
        return merged

    @property
    def effective_batch_size(self) -> int:
        return max(1, min(self.batch_size or 100, self.max_batch_size))


@dataclass
class ImportStatistics:
    total_requested: int = 0
    rows_scanned: int = 0
    rows_with_errors: int = 0
    contacts_attempted: int = 0
    contacts_created: int = 0
    contacts_updated: int = 0
    contacts_failed: int = 0
    main_contacts: int = 0
    related_contacts: int = 0
    total_phones: int = 0
    total_emails: int = 0
    duplicate_groups: int = 0
    batches_total: int = 0
    batches_completed: int = 0
    category_counts: Dict[str, int] = field(default_factory=dict)
    elapsed_seconds: float = 0.0
    _started: float = field(default_factory=time.perf_counter, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_persisted(self, contact: Contact, updated: bool = False) -> None:
        with self._lock:
            if updated:
                self.contacts_updated += 1
            else:
                self.contacts_created += 1
            if contact.is_main_contact:
                self.main_contacts += 1
            else:
                self.related_contacts += 1
            self.total_phones += len(contact.phones)
            self.total_emails += len(contact.emails)
            if contact.category:
                self.category_counts[contact.category] = self.category_counts.get(contact.category, 0) + 1

    def record_failed(self, count: int = 1) -> None:
        with self._lock:
            self.contacts_failed += count

    def record_batch(self) -> int:
        with self._lock:
            self.batches_completed += 1
            return self.batches_completed

    @property
    def persisted(self) -> int:
        return self.contacts_created + self.contacts_updated

    @property
    def total_processed(self) -> int:
        return self.contacts_attempted + self.rows_with_errors

    @property
    def success_rate(self) -> int:
        if not self.total_processed:
            return 0
        return round(self.persisted / self.total_processed * 100)

    def finish(self) -> None:
        self.elapsed_seconds = time.perf_counter() - self._started

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            elapsed = self.elapsed_seconds or (time.perf_counter() - self._started)
            elapsed_ms = round(elapsed * 1000)
            processed = self.total_processed
            return {
                "totalRequested": self.total_requested,
                "rowsScanned": self.rows_scanned,
                "rowsWithErrors": self.rows_with_errors,
                "validContacts": self.contacts_attempted,
                "successfullyCreated": self.contacts_created,
                "updated": self.contacts_updated,
                "failed": self.contacts_failed + self.rows_with_errors,
                "successRate": self.success_rate,
                "processingTimeMs": elapsed_ms,
                "averageTimePerContactMs": round(elapsed_ms / processed) if processed else 0,
                "contactsPerSecond": round(self.persisted / elapsed, 2) if elapsed > 0 else 0.0,
                "mainContacts": self.main_contacts,
                "relatedContacts": self.related_contacts,
                "totalPhones": self.total_phones,
                "totalEmails": self.total_emails,
                "duplicateGroups": self.duplicate_groups,
                "batchesCompleted": self.batches_completed,
                "batchesTotal": self.batches_total,
                "categoryCounts": dict(self.category_counts),
            }


@dataclass
class ImportResult:
    import_session_id: str
    status: ImportStatus
    statistics: ImportStatistics
    errors: List[str] = field(default_factory=list)
    file_name: Optional[str] = None
    file_size: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status != ImportStatus.FAILED

    def summary_message(self) -> str:
        stats = self.statistics
        if self.status == ImportStatus.COMPLETED:
            return "All contacts imported successfully"
        if self.status == ImportStatus.PARTIAL:
            return f"Partially successful: {stats.persisted} of {stats.total_processed} contacts imported"
        return "Import failed: No contacts were created"

    def to_response(self) -> Dict[str, Any]:
        stats = self.statistics
        return {
            "success": self.success,
            "importSessionId": self.import_session_id,
            "status": self.status.value,
            "statistics": stats.snapshot(),
            "summary": {
                "message": self.summary_message(),
                "created": stats.contacts_created,
                "updated": stats.contacts_updated,
                "failed": stats.contacts_failed + stats.rows_with_errors,
                "totalProcessed": stats.total_processed,
            },
            "errors": self.errors[:MAX_REPORTED_ERRORS],
            "hasMoreErrors": len(self.errors) > MAX_REPORTED_ERRORS,
            "recommendations": build_recommendations(stats, self.errors),
        }


def _error_kind(error: str) -> str:
    body = error.split(": ", 1)[-1]
    return body.split(":", 1)[0].strip()


def build_recommendations(stats: ImportStatistics, errors: Sequence[str]) -> List[str]:
    recommendations: List[str] = []
    if stats.success_rate < 100:
        recommendations.append("Review error messages to improve data quality")
    if stats.success_rate < 50:
        recommendations.append("Consider using data validation tools before import")

    kinds = Counter(_error_kind(error) for error in errors)
    if kinds:
        kind, occurrences = kinds.most_common(1)[0]
        if occurrences > 1:
            recommendations.append(f'Focus on fixing "{kind}" issues ({occurrences} occurrences)')

    if stats.total_processed and stats.elapsed_seconds * 1000 / stats.total_processed > SLOW_CONTACT_MS:
        recommendations.append("Consider smaller batch sizes for better performance")
    if stats.total_phones == 0:
        recommendations.append("Contacts without phone numbers have limited usefulness")
    return recommendations


def _is_preparsed(row: Any) -> bool:
    return isinstance(row, Mapping) and (
        isinstance(row.get("phones"), list) or isinstance(row.get("emails"), list)
    )


def _merge_into(existing: Contact, incoming: Contact) -> Contact:
    """Fold ``incoming`` into ``existing``: fill empty scalars, append new phones and emails."""
    merged = existing.replace(
        phones=list(existing.phones),
        emails=list(existing.emails),
        relationships=list(existing.relationships),
        alternate_names=list(existing.alternate_names),
        tags=list(existing.tags),
    )
    for attr in (
        "status",
        "address",
        "address2",
        "suburb",
        "city",
        "pincode",
        "state",
        "country",
        "office_address",
        "category",
        "notes",
    ):
        if not getattr(merged, attr) and getattr(incoming, attr):
            setattr(merged, attr, getattr(incoming, attr))

    known_numbers = {phone_digits(phone.number) for phone in merged.phones}
    for phone in incoming.phones:
        digits = phone_digits(phone.number)
        if digits in known_numbers:
            continue
        known_numbers.add(digits)
        merged.phones.append(replace(phone, id=f"phone_{len(merged.phones)}", is_primary=False))
    known_addresses = {email.address for email in merged.emails}
    for email in incoming.emails:
        if email.address in known_addresses:
            continue
        known_addresses.add(email.address)
        merged.emails.append(
            Email(id=f"email_{len(merged.emails)}", address=email.address, is_valid=email.is_valid)
        )
    known_edges = {rel.related_contact_id for rel in merged.relationships}
    merged.relationships.extend(
        rel for rel in incoming.relationships if rel.related_contact_id not in known_edges
    )
    for name in incoming.alternate_names:
        if name not in merged.alternate_names:
            merged.alternate_names.append(name)
    for tag in incoming.tags:
        if tag not in merged.tags:
            merged.tags.append(tag)
    if incoming.duplicate_group and not merged.duplicate_group:
        merged.duplicate_group = incoming.duplicate_group
    ensure_single_primary(merged.phones)
    ensure_single_primary(merged.emails)
    return merged


class IngestionPipeline:
    """
    Turn spreadsheet rows (or pre-parsed contact payloads) into stored contacts.

    Rows are expanded one at a time; the whole contact set is grouped for
    duplicates once; persistence then runs in batches, optionally on a thread
    pool. A failing row, record or batch is recorded and the import carries on.
    """

    def __init__(
        self,
        store: ContactStore,
        options: Optional[ImportOptions] = None,
        id_factory: Optional[IdFactory] = None,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.options = options or ImportOptions()
        self.id_factory = id_factory or IdFactory()
        self.expander = RecordExpander(id_factory=self.id_factory)
        self.progress_callback = progress_callback
        self.sleep = sleep
        self._errors: List[str] = []
        self._errors_lock = threading.Lock()
        self._update_lock = threading.Lock()

    def _record_error(self, message: str) -> None:
        with self._errors_lock:
            self._errors.append(message)

    def validate_request(self, rows: Any) -> None:
        if not isinstance(rows, (list, tuple)):
            raise ImportRejectedError("Invalid request: contacts must be an array")
        if not rows:
            raise ImportRejectedError("No contacts provided")
        if len(rows) > self.options.max_rows:
            raise ImportRejectedError(
                f"Too many contacts. Maximum {self.options.max_rows} allowed per import, got {len(rows)}"
            )

    def _expand_row(self, row: Any) -> List[Contact]:
        spreadsheet_row = SpreadsheetRow.coerce(row)
        graph = self.expander.expand(spreadsheet_row)
        contacts = graph.contacts
        match_emails(extract_emails(spreadsheet_row.emails), contacts)
        return contacts

    def _prepare_preparsed(
        self, payload: Mapping[str, Any], seen_phones: Set[str], seen_emails: Set[str]
    ) -> Contact:
        payload = dict(payload)
        payload["phones"] = [
            item if isinstance(item, Mapping) else {"number": item} for item in payload.get("phones") or []
        ]
        payload["emails"] = [
            item if isinstance(item, Mapping) else {"address": item} for item in payload.get("emails") or []
        ]
        contact = Contact.from_mapping(payload)
        errors: List[str] = []
        if not contact.name:
            errors.append("Missing or invalid name")

        phones: List[Phone] = []
        for phone in contact.phones:
            digits = phone_digits(phone.number)
            if not phone.number:
                errors.append("Phone number cannot be empty")
            elif len(digits) < MIN_PREPARSED_PHONE_DIGITS:
                errors.append(f"Invalid phone number: {phone.number}")
            elif digits in seen_phones:
                errors.append(f"Duplicate phone number: {phone.number}")
            else:
                seen_phones.add(digits)
                analysis = analyze_phone(phone.number)
                phone.is_valid = analysis.is_valid if analysis else False
                phone.id = f"phone_{len(phones)}"
                phones.append(phone)

        emails: List[Email] = []
        for email in contact.emails:
            if "@" not in email.address:
                errors.append(f"Invalid email: {email.address}")
            elif email.address in seen_emails:
                errors.append(f"Duplicate email: {email.address}")
            else:
                seen_emails.add(email.address)
                email.is_valid = is_valid_email(email.address)
                email.id = f"email_{len(emails)}"
                emails.append(email)

        if errors and not (self.options.skip_validation and contact.name):
            raise RowValidationError(f"Contact {contact.name or 'unnamed'}: " + "; ".join(errors))

        contact.id = self.id_factory.new_id()
        contact.phones = phones
        contact.emails = emails
        contact.is_main_contact = not contact.parent_contact_id
        now = utcnow()
        contact.created_at = contact.created_at or now
        contact.last_updated = now
        ensure_single_primary(contact.phones)
        ensure_single_primary(contact.emails)
        return contact

    def prepare(self, rows: Sequence[Any], stats: ImportStatistics) -> List[Contact]:
        """Expand every row, isolating failures to the row that raised them."""
        contacts: List[Contact] = []
        seen_phones: Set[str] = set()
        seen_emails: Set[str] = set()
        for index, row in enumerate(rows, start=1):
            stats.rows_scanned += 1
            try:
                if _is_preparsed(row):
                    produced = [self._prepare_preparsed(row, seen_phones, seen_emails)]
                else:
                    produced = self._expand_row(row)
            except Exception as exc:  # noqa: BLE001 - one bad row never aborts the import
                stats.rows_with_errors += 1
                message = f"Row {index}: {exc}"
                logger.warning("Skipping row: %s", message)
                self._record_error(message)
                continue
            contacts.extend(produced)
        return contacts

    def resolve_existing(self, contacts: Sequence[Contact]) -> Dict[str, str]:
        """
        Point main contacts that already exist (case-insensitive name match)
        at the stored record, re-linking their related contacts and edges.

        Returns a map of stored id -> incoming main contact id for updates.
        """
        updates: Dict[str, str] = {}
        remap: Dict[str, str] = {}
        for contact in contacts:
            if not contact.is_main_contact:
                continue
            try:
                found = self.store.find_many(
                    {
                        "AND": [
                            {"isMainContact": True},
                            {"name": {"equals": contact.name, "mode": "insensitive"}},
                        ]
                    },
                    take=1,
                )
            except StoreError as exc:
                logger.warning("Lookup of existing contact %s failed: %s", contact.name, exc)
                continue
            if not found:
                continue
            existing_id = found[0]["id"]
            remap[contact.id] = existing_id
            contact.id = existing_id
            updates[existing_id] = existing_id

        for contact in contacts:
            if contact.parent_contact_id in remap:
                contact.parent_contact_id = remap[contact.parent_contact_id]
            for rel in contact.relationships:
                if rel.contact_id in remap:
                    rel.contact_id = remap[rel.contact_id]
        if updates:
            logger.info("Updating %d existing main contact(s)", len(updates))
        return updates

    def _write(self, contact: Contact, update_ids: Mapping[str, str]) -> bool:
        if contact.is_main_contact and contact.id in update_ids:
            with self._update_lock:
                current = self.store.find_unique(contact.id)
                if current is None:
                    raise ContactNotFoundError(f"Contact {contact.id} no longer exists")
                merged = _merge_into(Contact.from_mapping(current), contact)
                patch = merged.to_dict()
                patch.pop("createdAt", None)
                patch["lastUpdated"] = utcnow()
                self.store.update(contact.id, patch)
            return True
        self.store.create(contact.to_dict())
        return False

    def persist_contact(self, contact: Contact, update_ids: Mapping[str, str]) -> bool:
        """Write one contact, retrying transient failures with exponential backoff."""
        return with_retry(
            lambda: self._write(contact, update_ids),
            retries=self.options.max_retries,
            base_delay=self.options.retry_base_delay,
            sleep=self.sleep,
            jitter=0.0,
            label=contact.name,
        )

    def persist_batch(
        self,
        batch_number: int,
        batch: Sequence[Contact],
        update_ids: Mapping[str, str],
        stats: ImportStatistics,
    ) -> None:
        done = 0
        try:
            for contact in batch:
                try:
                    updated = self.persist_contact(contact, update_ids)
                except StoreError as exc:
                    stats.record_failed()
                    message = f"Contact {contact.name}: {exc}"
                    logger.warning("Failed to persist: %s", message)
                    self._record_error(message)
                else:
                    stats.record_persisted(contact, updated=updated)
                done += 1
        except Exception as exc:  # noqa: BLE001 - a broken batch must not stop later batches
            remaining = len(batch) - done
            stats.record_failed(remaining)
            message = f"Batch {batch_number}: {exc}"
            logger.error("Batch failed, %d contact(s) not persisted: %s", remaining, message)
            self._record_error(message)

    def _after_batch(self, stats: ImportStatistics) -> None:
        completed = stats.record_batch()
        every = max(1, self.options.progress_every)
        if completed % every == 0 or completed == stats.batches_total:
            snapshot = stats.snapshot()
            logger.info(
                "Progress: %d/%d batches, %d created, %d updated, %d failed",
                completed,
                stats.batches_total,
                snapshot["successfullyCreated"],
                snapshot["updated"],
                stats.contacts_failed,
            )
            if self.progress_callback:
                self.progress_callback(snapshot)

    def persist(
        self, contacts: Sequence[Contact], update_ids: Mapping[str, str], stats: ImportStatistics
    ) -> None:
        size = self.options.effective_batch_size
        batches: List[Tuple[int, Sequence[Contact]]] = [
            (number, contacts[start : start + size])
            for number, start in enumerate(range(0, len(contacts), size), start=1)
        ]
        stats.batches_total = len(batches)
        if not batches:
            return

        workers = max(1, self.options.workers)
        if workers == 1:
            for number, batch in batches:
                self.persist_batch(number, batch, update_ids, stats)
                self._after_batch(stats)
            return

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self.persist_batch, number, batch, update_ids, stats)
                for number, batch in batches
            ]
            for future in as_completed(futures):
                future.result()
                self._after_batch(stats)

    def run(
        self,
        rows: Sequence[Any],
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> ImportResult:
        self.validate_request(rows)
        self._errors = []
        session_id = self.id_factory.new_id()
        stats = ImportStatistics(total_requested=len(rows))
        logger.info(
            "Import %s started: %d row(s) from %s", session_id, len(rows), file_name or "request"
        )

        contacts = self.prepare(rows, stats)
        stats.contacts_attempted = len(contacts)
        stats.duplicate_groups = len(assign_duplicate_groups(contacts))
        update_ids = self.resolve_existing(contacts) if self.options.update_existing else {}
        self.persist(contacts, update_ids, stats)
        stats.finish()

        if stats.persisted == 0:
            status = ImportStatus.FAILED
        elif stats.persisted < stats.contacts_attempted or self._errors:
            status = ImportStatus.PARTIAL
        else:
            status = ImportStatus.COMPLETED
        logger.info(
            "Import %s finished %s: %d created, %d updated, %d failed in %.2fs",
            session_id,
            status.value,
            stats.contacts_created,
            stats.contacts_updated,
            stats.contacts_failed + stats.rows_with_errors,
            stats.elapsed_seconds,
        )
        return ImportResult(
            import_session_id=session_id,
            status=status,
            statistics=stats,
            errors=list(self._errors),
            file_name=file_name,
            file_size=file_size,
        )


def handle_import_request(
    store: ContactStore,
    payload: Any,
    options: Optional[ImportOptions] = None,
    id_factory: Optional[IdFactory] = None,
    progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> Dict[str, Any]:
    """Validate an import request body, run the pipeline and build the response."""
    if not isinstance(payload, Mapping):
        payload = {}
    effective = (options or ImportOptions()).with_request(payload.get("options"))
    pipeline = IngestionPipeline(
        store, options=effective, id_factory=id_factory, progress_callback=progress_callback
    )
    try:
        result = pipeline.run(
            payload.get("contacts"),
            file_name=payload.get("fileName"),
            file_size=payload.get("fileSize"),
        )
    except ImportRejectedError as exc:
        logger.warning("Import rejected: %s", exc)
        return {
            "success": False,
            "status": ImportStatus.FAILED.value,
            "error": str(exc),
            "errors": [str(exc)],
            "hasMoreErrors": False,
        }
    return result.to_response()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Import directory rows into the contact store.")
    parser.add_argument("--config", type=str, default=None, help="Path to YAML config.")
    parser.add_argument("--input", type=str, default=None, help="CSV or XLSX file of rows.")
    parser.add_argument("--header-starts-with", type=str, default=None)
    parser.add_argument("--out-dir", type=str, default=None)
    parser.add_argument("--store", type=str, default=None, help="Path to the JSON contact store.")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--max-rows", type=int, default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--max-retries", type=int, default=None)
    parser.add_argument("--update-existing", action="store_true", default=None)
    parser.add_argument("--skip-validation", action="store_true", default=None)
    parser.add_argument("--seed", type=str, default=None, help="Seed for reproducible ids.")
    parser.add_argument("--log-level", type=str, default=None, help="Override logging level")
    parser.add_argument("--log-file", type=str, default=None, help="Also append log records to this file")
    args = parser.parse_args(argv)

    config = load_config(args)
    configure_logging(config, level_override=args.log_level)
    if not config.inputs.rows_file:
        parser.error("an input file is required (--input or inputs.rows_file)")

    rows = read_rows(config.inputs.rows_file, config.inputs.header_starts_with)
    store = JsonContactStore(config.outputs.store_path)
    response = handle_import_request(
        store,
        {
            "contacts": rows,
            "fileName": os.path.basename(config.inputs.rows_file),
            "fileSize": os.path.getsize(config.inputs.rows_file),
        },
        options=ImportOptions.from_config(config.ingestion),
        id_factory=IdFactory(args.seed) if args.seed else None,
    )
    store.save()

    print(json.dumps(response, indent=2, default=str))
    return 0 if response.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
