"""Free-text label classification for phones and inferred relationships."""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Tuple

PHONE_TYPE_KEYWORDS: Sequence[Tuple[str, Sequence[str]]] = (
    ("office", ("office", "work", "business")),
    ("residence", ("home", "house", "residence")),
    ("fax", ("fax",)),
    ("mobile", ("mobile", "cell")),
)

# Slot order of the phone-bearing columns: mobile1..mobile4, office, residence.
MOBILE_SLOTS = 4
OFFICE_SLOT = 4
RESIDENCE_SLOT = 5

# Compound and "grand" terms come before the family words they contain.
RELATIONSHIP_RULES: Sequence[Tuple[str, Sequence[str]]] = (
    ("in_law", ("in-law", "in law", "inlaw")),
    ("grandparent", ("grandfather", "grandmother", "grandparent")),
    ("grandchild", ("grandson", "granddaughter", "grandchild")),
    ("spouse", ("wife", "husband", "spouse")),
    ("child", ("son", "daughter", "child")),
    ("parent", ("father", "mother", "parent")),
    ("sibling", ("brother", "sister")),
    ("extended_family", ("uncle", "aunt", "cousin", "nephew", "niece")),
    ("colleague", ("office", "work", "colleague")),
    ("assistant", ("assistant", "secretary")),
    ("supervisor", ("boss", "manager", "supervisor")),
    ("subordinate", ("employee", "subordinate")),
    ("business_partner", ("partner",)),
    ("client", ("client", "customer")),
    ("friend", ("friend",)),
    ("neighbor", ("neighbor", "neighbour")),
)

RELATIONSHIP_WORDS: List[str] = [
    "son", "daughter", "child", "wife", "husband", "spouse", "father", "mother",
    "parent", "brother", "sister", "uncle", "aunt", "cousin", "nephew", "niece",
    "grandfather", "grandmother", "grandson", "granddaughter", "grandchild",
    "brother-in-law", "sister-in-law", "mother-in-law", "father-in-law",
    "son-in-law", "daughter-in-law", "in-law", "friend", "colleague",
    "assistant", "secretary", "partner", "boss", "manager", "employee", "office",
    "work", "home", "personal", "mobile", "cell", "landline", "fax", "residence",
    "house", "business", "client", "customer", "neighbor", "neighbour",
    "supervisor", "subordinate",
]
STOPWORDS = ("of", "the", "a", "an")

# Longest first so "mother-in-law" is removed before "mother".
_RELATIONSHIP_WORD_PATTERNS = [
    re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)
    for word in sorted(RELATIONSHIP_WORDS, key=len, reverse=True)
]
_STOPWORD_PATTERN = re.compile(r"\b(" + "|".join(STOPWORDS) + r")\b", re.IGNORECASE)


def classify_phone_type(field_position: int, label: Optional[str] = "") -> str:
    lower = (label or "").lower()
    for phone_type, keywords in PHONE_TYPE_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return phone_type
    if field_position < MOBILE_SLOTS:
        return "mobile"
    if field_position == OFFICE_SLOT:
        return "office"
    if field_position == RESIDENCE_SLOT:
        return "residence"
    return "other"


def classify_relationship(label: Optional[str]) -> str:
    lower = (label or "").lower()
    if not lower:
        return "related"
    for relationship_type, keywords in RELATIONSHIP_RULES:
        if any(keyword in lower for keyword in keywords):
            return relationship_type
    return "related"


def clean_relationship_label(label: Optional[str]) -> Optional[str]:
    """
    Reduce a relationship label to a candidate person name.

    ``"Son Rahul"`` becomes ``"Rahul"``; ``"Husband"`` has nothing left and
    yields ``None``, as does a purely numeric residue.
    """
    if not label:
        return None
    cleaned = label.strip()
    for pattern in _RELATIONSHIP_WORD_PATTERNS:
        cleaned = pattern.sub("", cleaned).strip()
    cleaned = _STOPWORD_PATTERN.sub("", cleaned)
    cleaned = re.sub(r"[()]", "", cleaned)
    cleaned = re.sub(r"[-_]", " ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = " ".join(word[:1].upper() + word[1:].lower() for word in cleaned.split(" ") if word)
    if len(cleaned) < 2 or cleaned.isdigit():
        return None
    return cleaned
