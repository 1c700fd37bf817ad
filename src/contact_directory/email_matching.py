from __future__ import annotations

import logging
import re
from typing import List, Sequence, Set

from .models import Contact, Email
from .normalization import is_valid_email

logger = logging.getLogger(__name__)


def _name_tokens(name: str) -> List[str]:
    lowered = (name or "").lower()
    parts = [part for part in lowered.split() if part]
    if not parts:
        return []
    full = re.sub(r"\s+", "", lowered)
    return [token for token in (parts[0], parts[-1], full) if token]


def _has_address(contact: Contact, address: str) -> bool:
    return any(email.address == address for email in contact.emails)


def _attach(contact: Contact, address: str) -> None:
    contact.emails.append(
        Email(
            id=f"email_{len(contact.emails)}",
            address=address,
            is_primary=len(contact.emails) == 0,
            is_valid=is_valid_email(address),
        )
    )


def name_affinity(local_part: str, contact: Contact) -> bool:
    local = (local_part or "").lower()
    if not local:
        return False
    return any(token in local or local in token for token in _name_tokens(contact.name))


def match_emails(addresses: Sequence[str], contacts: Sequence[Contact]) -> None:
    """
    Distribute one row's addresses over that row's contacts, in place.

    Addresses whose local part shares a name token with a contact go to the
    first such contact; the rest are dealt round-robin starting from the main
    contact. The order of ``contacts`` decides who absorbs leftovers.
    """
    if not addresses or not contacts:
        return

    matched: Set[str] = set()
    for address in addresses:
        local_part = address.split("@", 1)[0]
        target = next((c for c in contacts if name_affinity(local_part, c)), None)
        if target is None:
            continue
        if not _has_address(target, address):
            _attach(target, address)
        matched.add(address)

    unmatched = [address for address in addresses if address not in matched]
    for index, address in enumerate(unmatched):
        target = contacts[index % len(contacts)]
        if not _has_address(target, address):
            _attach(target, address)
    if unmatched:
        logger.debug(
            "Round-robin assigned %d address(es) for %s", len(unmatched), contacts[0].name
        )
