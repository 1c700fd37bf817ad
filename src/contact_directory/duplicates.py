from __future__ import annotations

import logging
from collections import OrderedDict, defaultdict
from typing import Any, Dict, Iterable, List, Sequence

from .common import ensure_contact
from .models import Contact
from .normalization import name_group_key, phone_match_key

logger = logging.getLogger(__name__)


def assign_duplicate_groups(contacts: Sequence[Contact]) -> Dict[str, List[Contact]]:
    """
    Stamp ``duplicate_group`` on every contact whose whitespace-free, lower-cased
    name is shared with another contact in ``contacts``.

    Returns the groups that received a key. Singletons keep ``None``.
    """
    buckets: "OrderedDict[str, List[Contact]]" = OrderedDict()
    for contact in contacts:
        key = name_group_key(contact.name)
        if not key:
            continue
        buckets.setdefault(key, []).append(contact)

    groups: Dict[str, List[Contact]] = {}
    for key, members in buckets.items():
        if len(members) < 2:
            continue
        for contact in members:
            contact.duplicate_group = key
        groups[key] = members
    if groups:
        logger.info(
            "Found %d duplicate group(s) covering %d contacts",
            len(groups),
            sum(len(members) for members in groups.values()),
        )
    return groups


def find_duplicate_phones(
    contacts: Iterable[Any], default_region: str = "IN"
) -> List[Dict[str, Any]]:
    """Group contacts that share a phone number, keyed by E.164 where parseable."""
    by_number: Dict[str, Dict[str, Contact]] = defaultdict(OrderedDict)
    display: Dict[str, str] = {}
    for raw in contacts:
        contact = ensure_contact(raw)
        for phone in contact.phones:
            key = phone_match_key(phone.number, default_region)
            if not key:
                continue
            by_number[key][contact.id] = contact
            display.setdefault(key, phone.number)

    results: List[Dict[str, Any]] = []
    for key, members in by_number.items():
        if len(members) < 2:
            continue
        results.append(
            {
                "phoneNumber": display[key],
                "normalized": key,
                "count": len(members),
                "contacts": [
                    {
                        "id": contact.id,
                        "name": contact.name,
                        "isMainContact": contact.is_main_contact,
                        "parentContactId": contact.parent_contact_id,
                    }
                    for contact in members.values()
                ],
            }
        )
    results.sort(key=lambda item: (-item["count"], item["normalized"]))
    return results
