"""
Single-contact operations used by the directory UI: create, update, fetch,
parent lookup, location pick-lists and headline statistics.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, List, Mapping, Optional

from .common import IdFactory, utcnow
from .duplicates import find_duplicate_phones
from .filters import RESULT_INCLUDE, search_contacts
from .models import Contact, ensure_single_primary
from .normalization import EMAIL_RE, analyze_phone, is_valid_email
from .store import ContactNotFoundError, ContactStore

logger = logging.getLogger(__name__)

PINCODE_RE = re.compile(r"^\d{4,6}$")
PARENT_LIMIT_DEFAULT = 10
PARENT_LIMIT_MAX = 50
LOCATION_FIELDS = {
    "cities": "city",
    "states": "state",
    "countries": "country",
    "suburbs": "suburb",
    "categories": "category",
}


class ContactValidationError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__("Validation failed: " + "; ".join(errors))
        self.errors = list(errors)


def validate_contact(contact: Contact) -> List[str]:
    errors: List[str] = []
    if not contact.name:
        errors.append("Name is required")
    elif len(contact.name) < 2:
        errors.append("Name must be at least 2 characters long")

    for index, phone in enumerate(contact.phones, start=1):
        if not phone.number:
            errors.append(f"Phone {index}: Missing phone number")
        elif analyze_phone(phone.number) is None:
            errors.append(f"Phone {index}: Invalid format")

    for index, email in enumerate(contact.emails, start=1):
        if "@" not in email.address:
            errors.append(f"Email {index}: Invalid email format")
        elif not EMAIL_RE.match(email.address):
            errors.append(f"Email {index}: Invalid format")

    if contact.pincode and not PINCODE_RE.match(contact.pincode):
        errors.append("Invalid pincode format")

    if not contact.is_main_contact and not contact.parent_contact_id:
        errors.append("Child contacts must include a parentContactId")
    return errors


def _link_parent(contact: Contact, promote: bool = False) -> None:
    if contact.parent_contact_id:
        contact.is_main_contact = False
    elif promote:
        contact.is_main_contact = True


def _prepare(contact: Contact, id_factory: IdFactory) -> None:
    for index, phone in enumerate(contact.phones):
        phone.id = phone.id or f"phone_{index}"
        analysis = analyze_phone(phone.number)
        phone.is_valid = analysis.is_valid if analysis else False
    for index, email in enumerate(contact.emails):
        email.id = email.id or f"email_{index}"
        email.is_valid = is_valid_email(email.address)
    for rel in contact.relationships:
        rel.id = rel.id or id_factory.new_id()
        rel.contact_id = rel.contact_id or contact.id
    ensure_single_primary(contact.phones)
    ensure_single_primary(contact.emails)


def _check_parent(store: ContactStore, contact: Contact) -> None:
    if contact.parent_contact_id and store.find_unique(contact.parent_contact_id) is None:
        raise ContactValidationError([f"Parent contact {contact.parent_contact_id} not found"])


def create_contact(
    store: ContactStore, payload: Mapping[str, Any], id_factory: Optional[IdFactory] = None
) -> Dict[str, Any]:
    """Validate and store a contact submitted as a camelCase document."""
    id_factory = id_factory or IdFactory()
    contact = Contact.from_mapping(dict(payload))
    _link_parent(contact)
    errors = validate_contact(contact)
    if errors:
        raise ContactValidationError(errors)
    _check_parent(store, contact)

    contact.id = id_factory.new_id()
    _prepare(contact, id_factory)
    now = utcnow()
    contact.created_at = now
    contact.last_updated = now
    created = store.create(contact.to_dict())
    logger.info("Created contact %s (%s)", created["id"], contact.name)
    return created


def update_contact(
    store: ContactStore,
    contact_id: str,
    patch: Mapping[str, Any],
    id_factory: Optional[IdFactory] = None,
) -> Dict[str, Any]:
    current = store.find_unique(contact_id)
    if current is None:
        raise ContactNotFoundError(f"Contact {contact_id} not found")

    merged = {**current, **dict(patch), "id": contact_id}
    contact = Contact.from_mapping(merged)
    if patch.get("isMainContact") is True and "parentContactId" not in patch:
        contact.parent_contact_id = None
    if "parentContactId" in patch or "isMainContact" in patch:
        _link_parent(contact, promote="isMainContact" not in patch)
    errors = validate_contact(contact)
    if errors:
        raise ContactValidationError(errors)
    if contact.parent_contact_id == contact_id:
        raise ContactValidationError(["A contact cannot be its own parent"])
    _check_parent(store, contact)

    _prepare(contact, id_factory or IdFactory())
    document = contact.to_dict()
    document.pop("createdAt", None)
    document["lastUpdated"] = utcnow()
    updated = store.update(contact_id, document)
    if updated is None:
        raise ContactNotFoundError(f"Contact {contact_id} not found")
    logger.info("Updated contact %s", contact_id)
    return updated


def get_contact(store: ContactStore, contact_id: str) -> Dict[str, Any]:
    found = store.find_many({"id": contact_id}, take=1, include=RESULT_INCLUDE)
    if not found:
        raise ContactNotFoundError(f"Contact {contact_id} not found")
    return found[0]


def _parent_summary(contact: Mapping[str, Any]) -> Dict[str, Any]:
    summary = {
        key: contact.get(key)
        for key in ("id", "name", "status", "category", "suburb", "city", "state", "country", "pincode", "address")
    }
    summary["phones"] = contact.get("phones") or []
    summary["emails"] = contact.get("emails") or []
    return summary


def search_parents(
    store: ContactStore, q: Optional[str] = None, page: Any = 1, limit: Any = PARENT_LIMIT_DEFAULT
) -> Dict[str, Any]:
    """Main contacts that can be chosen as the parent of a related contact."""
    try:
        limit_value = int(str(limit))
    except ValueError:
        limit_value = PARENT_LIMIT_DEFAULT
    try:
        page_value = max(int(str(page)), 1)
    except ValueError:
        page_value = 1
    limit_value = min(max(limit_value or PARENT_LIMIT_DEFAULT, 1), PARENT_LIMIT_MAX)

    result = search_contacts(
        store,
        {
            "search": (q or "").strip() or None,
            "filter": "main",
            "hasParent": False,
            "page": page_value,
            "limit": limit_value,
        },
        include={},
    )
    return {
        "parents": [_parent_summary(contact) for contact in result["contacts"]],
        "total": result["total"],
        "totalPages": result["totalPages"],
        "page": result["currentPage"],
        "hasNextPage": result["hasNextPage"],
        "hasPrevPage": result["hasPrevPage"],
    }


def location_options(store: ContactStore) -> Dict[str, List[str]]:
    contacts = store.find_many({})
    options: Dict[str, List[str]] = {}
    for key, field_name in LOCATION_FIELDS.items():
        values = {str(c.get(field_name)).strip() for c in contacts if c.get(field_name)}
        options[key] = sorted(value for value in values if value)
    return options


def directory_stats(store: ContactStore) -> Dict[str, Any]:
    started = time.perf_counter()
    contacts = store.find_many({})
    stats = {
        "totalContacts": len(contacts),
        "mainContacts": sum(1 for c in contacts if c.get("isMainContact")),
        "relatedContacts": sum(1 for c in contacts if not c.get("isMainContact")),
        "totalPhones": sum(len(c.get("phones") or []) for c in contacts),
        "totalEmails": sum(len(c.get("emails") or []) for c in contacts),
        "duplicateGroups": sum(1 for c in contacts if c.get("duplicateGroup")),
    }
    stats["metadata"] = {
        "queryTimeMs": round((time.perf_counter() - started) * 1000, 2),
        "timestamp": utcnow().isoformat(),
    }
    return stats


def duplicate_phone_report(store: ContactStore, default_region: str = "IN") -> Dict[str, Any]:
    groups = find_duplicate_phones(store.find_many({}), default_region=default_region)
    return {
        "duplicates": groups,
        "totalGroups": len(groups),
        "totalContacts": sum(group["count"] for group in groups),
    }
