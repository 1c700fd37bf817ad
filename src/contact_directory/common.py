from __future__ import annotations

import itertools
import secrets
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from .config_loader import PipelineConfig, load_pipeline_config
from .models import Contact, ContactRelationship, Email, Phone, ensure_single_primary
from .normalization import (
    PhoneAnalysis,
    analyze_phone,
    cell_text,
    extract_emails,
    format_phone_e164_safe,
    is_blank_cell,
    is_valid_email,
    name_group_key,
    phone_digits,
    read_rows,
    title_case_human,
    validate_email_safe,
)

__all__ = [
    "Contact",
    "ContactRelationship",
    "Email",
    "IdFactory",
    "Phone",
    "PhoneAnalysis",
    "PipelineConfig",
    "analyze_phone",
    "cell_text",
    "deterministic_uuid",
    "ensure_contact",
    "ensure_single_primary",
    "extract_emails",
    "format_phone_e164_safe",
    "is_blank_cell",
    "is_valid_email",
    "load_config",
    "load_pipeline_config",
    "name_group_key",
    "new_object_id",
    "phone_digits",
    "read_rows",
    "title_case_human",
    "utcnow",
    "validate_email_safe",
]


def deterministic_uuid(namespace_str: str) -> str:
    namespace = uuid.UUID("12345678-1234-5678-1234-567812345678")
    return str(uuid.uuid5(namespace, namespace_str))


def new_object_id() -> str:
    """24 hex characters, the shape document stores use for primary keys."""
    return secrets.token_hex(12)


class IdFactory:
    """
    Mints contact and relationship identifiers ahead of persistence.

    With a ``seed`` the sequence is reproducible, which keeps expansion output
    stable in tests and re-runs.
    """

    def __init__(self, seed: Optional[str] = None):
        self.seed = seed
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def new_id(self) -> str:
        if self.seed is None:
            return new_object_id()
        with self._lock:
            index = next(self._counter)
        return deterministic_uuid(f"{self.seed}:{index}").replace("-", "")[:24]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_config(args: Any) -> PipelineConfig:
    return load_pipeline_config(args)


def ensure_contact(obj: Any) -> Contact:
    if isinstance(obj, Contact):
        return obj
    if isinstance(obj, dict):
        return Contact.from_mapping(obj)
    raise TypeError(f"Unsupported contact payload type: {type(obj)!r}")
