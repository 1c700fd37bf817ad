from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .common import IdFactory, utcnow
from .models import Contact, ContactRelationship, Phone, ensure_single_primary
from .normalization import analyze_phone, cell_text, is_blank_cell, phone_digits
from .relationships import classify_phone_type, classify_relationship, clean_relationship_label

logger = logging.getLogger(__name__)

COLUMN_MAP = {
    "sr_no": 0,
    "name": 1,
    "status": 2,
    "address": 3,
    "suburb": 4,
    "city": 5,
    "pincode": 6,
    "state": 7,
    "country": 8,
    "mobile1": 9,
    "mobile2": 10,
    "mobile3": 11,
    "mobile4": 12,
    "office": 13,
    "residence": 14,
    "emails": 15,
    "category": 16,
    "office_address": 17,
    "address2": 18,
}

PHONE_COLUMNS = ("mobile1", "mobile2", "mobile3", "mobile4", "office", "residence")

HEADER_ALIASES = {
    "srno": "sr_no",
    "sr": "sr_no",
    "serial": "sr_no",
    "name": "name",
    "fullname": "name",
    "contactname": "name",
    "status": "status",
    "address": "address",
    "address1": "address",
    "suburb": "suburb",
    "city": "city",
    "pincode": "pincode",
    "pin": "pincode",
    "zip": "pincode",
    "postalcode": "pincode",
    "state": "state",
    "country": "country",
    "mobile": "mobile1",
    "mobile1": "mobile1",
    "phone": "mobile1",
    "phone1": "mobile1",
    "mobile2": "mobile2",
    "phone2": "mobile2",
    "mobile3": "mobile3",
    "phone3": "mobile3",
    "mobile4": "mobile4",
    "phone4": "mobile4",
    "office": "office",
    "officephone": "office",
    "work": "office",
    "residence": "residence",
    "residencephone": "residence",
    "home": "residence",
    "emails": "emails",
    "email": "emails",
    "emailaddress": "emails",
    "category": "category",
    "officeaddress": "office_address",
    "address2": "address2",
}

PHONE_SEPARATORS = re.compile(r"[,;\n]")
LABEL_PATTERNS = (
    re.compile(r"^(.+?)\s*\(([^)]+)\)(.*)$"),
    re.compile(r"^([^:]+):\s*(.+)$"),
    re.compile(r"^(.+?)\s*-\s*(.+)$"),
)
MIN_LABELED_NUMBER_DIGITS = 10


def _header_key(header: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(header or "").lower())


@dataclass
class SpreadsheetRow:
    name: Optional[str] = None
    sr_no: Optional[str] = None
    status: Optional[str] = None
    address: Optional[str] = None
    suburb: Optional[str] = None
    city: Optional[str] = None
    pincode: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    mobile1: Optional[str] = None
    mobile2: Optional[str] = None
    mobile3: Optional[str] = None
    mobile4: Optional[str] = None
    office: Optional[str] = None
    residence: Optional[str] = None
    emails: Optional[str] = None
    category: Optional[str] = None
    office_address: Optional[str] = None
    address2: Optional[str] = None

    @classmethod
    def from_sequence(cls, values: Sequence[Any]) -> "SpreadsheetRow":
        payload: Dict[str, Optional[str]] = {}
        for field_name, index in COLUMN_MAP.items():
            payload[field_name] = cell_text(values[index]) if index < len(values) else None
        return cls(**payload)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "SpreadsheetRow":
        payload: Dict[str, Optional[str]] = {}
        for header, value in mapping.items():
            field_name = HEADER_ALIASES.get(_header_key(header))
            if field_name is None and header in COLUMN_MAP:
                field_name = header
            if field_name and payload.get(field_name) is None:
                payload[field_name] = cell_text(value)
        return cls(**payload)

    @classmethod
    def coerce(cls, row: Any) -> "SpreadsheetRow":
        if isinstance(row, SpreadsheetRow):
            return row
        if isinstance(row, Mapping):
            return cls.from_mapping(row)
        if isinstance(row, (list, tuple)):
            return cls.from_sequence(row)
        raise TypeError(f"Unsupported row type: {type(row)!r}")

    def phone_fields(self) -> List[Tuple[int, str]]:
        """Non-empty phone-bearing cells as ``(column slot, text)`` in column order."""
        fields: List[Tuple[int, str]] = []
        for slot, column in enumerate(PHONE_COLUMNS):
            value = getattr(self, column)
            if not is_blank_cell(value):
                fields.append((slot, str(value).strip()))
        return fields


@dataclass
class RowGraph:
    """Contacts minted from one row: the main node first, then related nodes in creation order."""

    main: Contact
    related: List[Contact] = field(default_factory=list)
    edges: List[ContactRelationship] = field(default_factory=list)
    dropped_labels: List[str] = field(default_factory=list)

    @property
    def contacts(self) -> List[Contact]:
        return [self.main, *self.related]


def split_phone_label(raw: str) -> Tuple[str, Optional[str]]:
    """
    Split ``"NUMBER (LABEL)"``, ``"LABEL: NUMBER"`` or ``"NUMBER - LABEL"``.

    A split is only accepted when one side carries at least ten digits; that
    side becomes the number. Labels that themselves hold ten digits are not
    guarded against.
    """
    text = (raw or "").strip()
    for pattern in LABEL_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        first = match.group(1).strip()
        second = match.group(2).strip()
        if len(phone_digits(first)) >= MIN_LABELED_NUMBER_DIGITS:
            return first, second or None
        if len(phone_digits(second)) >= MIN_LABELED_NUMBER_DIGITS:
            return second, first or None
    return text, None


class RecordExpander:
    def __init__(
        self,
        id_factory: Optional[IdFactory] = None,
        clock: Callable[[], Any] = utcnow,
    ):
        self.id_factory = id_factory or IdFactory()
        self.clock = clock

    def extract_phones(self, row: SpreadsheetRow) -> List[Phone]:
        phones: List[Phone] = []
        phone_seq = 0
        primary_assigned = False
        for position, (slot, field_text) in enumerate(row.phone_fields()):
            raw_numbers = [part.strip() for part in PHONE_SEPARATORS.split(field_text)]
            for raw in raw_numbers:
                if is_blank_cell(raw):
                    continue
                number_part, label = split_phone_label(raw)
                analysis = analyze_phone(number_part)
                phone_id = f"phone_{phone_seq}"
                phone_seq += 1
                if analysis is None:
                    logger.debug("Skipping unparseable phone %r for %s", raw, row.name)
                    continue
                is_primary = position == 0 and not primary_assigned
                primary_assigned = primary_assigned or is_primary
                phones.append(
                    Phone(
                        id=phone_id,
                        number=analysis.formatted,
                        type=classify_phone_type(slot, label),
                        is_primary=is_primary,
                        label=label,
                        country=analysis.country,
                        region=analysis.region,
                        is_valid=analysis.is_valid,
                    )
                )
        return phones

    def _build_main(self, row: SpreadsheetRow, now: Any) -> Contact:
        return Contact(
            id=self.id_factory.new_id(),
            name=(row.name or "").strip(),
            status=row.status,
            address=row.address,
            address2=row.address2,
            suburb=row.suburb,
            city=row.city,
            pincode=row.pincode,
            state=row.state,
            country=row.country,
            office_address=row.office_address,
            category=row.category,
            is_main_contact=True,
            parent_contact_id=None,
            created_at=now,
            last_updated=now,
        )

    def expand(self, row: Any) -> RowGraph:
        row = SpreadsheetRow.coerce(row)
        if not row.name or not row.name.strip():
            raise ValueError("Missing name")
        now = self.clock()
        main = self._build_main(row, now)
        graph = RowGraph(main=main)

        for phone in self.extract_phones(row):
            if not phone.label:
                main.phones.append(phone)
                continue
            related_name = clean_relationship_label(phone.label)
            if not related_name:
                logger.info(
                    "Dropped phone %s for %s: label %r leaves no usable name",
                    phone.number,
                    main.name,
                    phone.label,
                )
                graph.dropped_labels.append(phone.label)
                continue
            related = Contact(
                id=self.id_factory.new_id(),
                name=related_name,
                alternate_names=[phone.label],
                phones=[replace(phone, is_primary=True, label=None)],
                is_main_contact=False,
                parent_contact_id=main.id,
                city=main.city,
                state=main.state,
                country=main.country,
                created_at=now,
                last_updated=now,
            )
            edge = ContactRelationship(
                id=self.id_factory.new_id(),
                contact_id=main.id,
                related_contact_id=related.id,
                relationship_type=classify_relationship(phone.label),
                description=phone.label,
            )
            graph.related.append(related)
            graph.edges.append(edge)

        ensure_single_primary(main.phones)
        main.relationships = list(graph.edges)
        return graph
