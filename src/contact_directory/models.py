from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

PHONE_TYPES = ("mobile", "office", "residence", "fax", "other")

RELATIONSHIP_TYPES = (
    "spouse",
    "child",
    "parent",
    "sibling",
    "extended_family",
    "grandparent",
    "grandchild",
    "in_law",
    "colleague",
    "assistant",
    "supervisor",
    "subordinate",
    "business_partner",
    "client",
    "friend",
    "neighbor",
    "related",
)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Timezone-aware UTC datetime for ISO strings or datetimes; None when unparseable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        parsed = pd.to_datetime(value, errors="coerce", utc=True)
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def _opt_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


def _str_list(values: Any) -> List[str]:
    if not values:
        return []
    return [str(value).strip() for value in values if str(value or "").strip()]


@dataclass
class Phone:
    id: str
    number: str
    type: str = "other"
    is_primary: bool = False
    label: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    is_valid: Optional[bool] = None

    @staticmethod
    def from_mapping(payload: Dict[str, Any]) -> "Phone":
        phone_type = str(payload.get("type", "") or "other").strip().lower()
        return Phone(
            id=str(payload.get("id", "") or "").strip(),
            number=str(payload.get("number", "") or "").strip(),
            type=phone_type if phone_type in PHONE_TYPES else "other",
            is_primary=bool(payload.get("isPrimary", False)),
            label=_opt_str(payload.get("label")),
            country=_opt_str(payload.get("country")),
            region=_opt_str(payload.get("region")),
            is_valid=_opt_bool(payload.get("isValid")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "type": self.type,
            "isPrimary": self.is_primary,
            "label": self.label,
            "country": self.country,
            "region": self.region,
            "isValid": self.is_valid,
        }


@dataclass
class Email:
    id: str
    address: str
    is_primary: bool = False
    is_valid: Optional[bool] = None

    @staticmethod
    def from_mapping(payload: Dict[str, Any]) -> "Email":
        return Email(
            id=str(payload.get("id", "") or "").strip(),
            address=str(payload.get("address", "") or "").strip().lower(),
            is_primary=bool(payload.get("isPrimary", False)),
            is_valid=_opt_bool(payload.get("isValid")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "isPrimary": self.is_primary,
            "isValid": self.is_valid,
        }


@dataclass
class ContactRelationship:
    id: str
    contact_id: str
    related_contact_id: str
    relationship_type: str = "related"
    description: Optional[str] = None

    @staticmethod
    def from_mapping(payload: Dict[str, Any]) -> "ContactRelationship":
        rel_type = str(payload.get("relationshipType", "") or "related").strip().lower()
        return ContactRelationship(
            id=str(payload.get("id", "") or "").strip(),
            contact_id=str(payload.get("contactId", "") or "").strip(),
            related_contact_id=str(payload.get("relatedContactId", "") or "").strip(),
            relationship_type=rel_type if rel_type in RELATIONSHIP_TYPES else "related",
            description=_opt_str(payload.get("description")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "contactId": self.contact_id,
            "relatedContactId": self.related_contact_id,
            "relationshipType": self.relationship_type,
            "description": self.description,
        }


@dataclass
class Contact:
    id: str
    name: str
    status: Optional[str] = None
    address: Optional[str] = None
    address2: Optional[str] = None
    suburb: Optional[str] = None
    city: Optional[str] = None
    pincode: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    office_address: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    alternate_names: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    avatar_url: Optional[str] = None
    avatar_public_id: Optional[str] = None
    is_main_contact: bool = True
    parent_contact_id: Optional[str] = None
    duplicate_group: Optional[str] = None
    phones: List[Phone] = field(default_factory=list)
    emails: List[Email] = field(default_factory=list)
    relationships: List[ContactRelationship] = field(default_factory=list)
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @staticmethod
    def _ensure_phone_list(values: Sequence[Any]) -> List[Phone]:
        return [value if isinstance(value, Phone) else Phone.from_mapping(value) for value in values]

    @staticmethod
    def _ensure_email_list(values: Sequence[Any]) -> List[Email]:
        return [value if isinstance(value, Email) else Email.from_mapping(value) for value in values]

    @staticmethod
    def _ensure_relationship_list(values: Sequence[Any]) -> List[ContactRelationship]:
        return [
            value
            if isinstance(value, ContactRelationship)
            else ContactRelationship.from_mapping(value)
            for value in values
        ]

    @classmethod
    def from_mapping(cls, payload: Dict[str, Any]) -> "Contact":
        return cls(
            id=str(payload.get("id", "") or "").strip(),
            name=str(payload.get("name", "") or "").strip(),
            status=_opt_str(payload.get("status")),
            address=_opt_str(payload.get("address")),
            address2=_opt_str(payload.get("address2")),
            suburb=_opt_str(payload.get("suburb")),
            city=_opt_str(payload.get("city")),
            pincode=_opt_str(payload.get("pincode")),
            state=_opt_str(payload.get("state")),
            country=_opt_str(payload.get("country")),
            office_address=_opt_str(payload.get("officeAddress")),
            category=_opt_str(payload.get("category")),
            notes=_opt_str(payload.get("notes")),
            alternate_names=_str_list(payload.get("alternateNames")),
            tags=_str_list(payload.get("tags")),
            avatar_url=_opt_str(payload.get("avatarUrl")),
            avatar_public_id=_opt_str(payload.get("avatarPublicId")),
            is_main_contact=bool(payload.get("isMainContact", True)),
            parent_contact_id=_opt_str(payload.get("parentContactId")),
            duplicate_group=_opt_str(payload.get("duplicateGroup")),
            phones=cls._ensure_phone_list(payload.get("phones", []) or []),
            emails=cls._ensure_email_list(payload.get("emails", []) or []),
            relationships=cls._ensure_relationship_list(payload.get("relationships", []) or []),
            created_at=parse_timestamp(payload.get("createdAt")),
            last_updated=parse_timestamp(payload.get("lastUpdated")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "address": self.address,
            "address2": self.address2,
            "suburb": self.suburb,
            "city": self.city,
            "pincode": self.pincode,
            "state": self.state,
            "country": self.country,
            "officeAddress": self.office_address,
            "category": self.category,
            "notes": self.notes,
            "alternateNames": list(self.alternate_names),
            "tags": list(self.tags),
            "avatarUrl": self.avatar_url,
            "avatarPublicId": self.avatar_public_id,
            "isMainContact": self.is_main_contact,
            "parentContactId": self.parent_contact_id,
            "duplicateGroup": self.duplicate_group,
            "phones": [phone.to_dict() for phone in self.phones],
            "emails": [email.to_dict() for email in self.emails],
            "relationships": [rel.to_dict() for rel in self.relationships],
            "createdAt": self.created_at,
            "lastUpdated": self.last_updated,
        }

    def replace(self, **changes: Any) -> "Contact":
        return replace(self, **changes)


def ensure_single_primary(items: Sequence[Any]) -> None:
    """Keep exactly one ``is_primary`` flag set on a non-empty phone/email list."""
    if not items:
        return
    seen = False
    for item in items:
        if item.is_primary and not seen:
            seen = True
        else:
            item.is_primary = False
    if not seen:
        items[0].is_primary = True
