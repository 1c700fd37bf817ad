from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import Any, List, Optional

import pandas as pd
import phonenumbers
from email_validator import EmailNotValidError, validate_email

logger = logging.getLogger(__name__)

EMAIL_SCAN_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

PHONE_ALLOWED_CHARS_RE = re.compile(r"[^\d+\-\s()]")
NON_DIGIT_RE = re.compile(r"\D")
INDIAN_MOBILE_RE = re.compile(r"^(?:91|0)?([6-9]\d{9})$")
NANP_RE = re.compile(r"^1?([2-9]\d{2}[2-9]\d{2}\d{4})$")

MIN_PHONE_DIGITS = 6
OPAQUE_VALID_DIGITS = 8
UNKNOWN_VALID_DIGITS = 10

EMPTY_CELL_TOKENS = {"", "-"}


@dataclass(frozen=True)
class PhoneAnalysis:
    formatted: str
    country: str
    region: str
    is_valid: bool


def phone_digits(value: Optional[str]) -> str:
    return NON_DIGIT_RE.sub("", value or "")


def analyze_phone(raw: Optional[str]) -> Optional[PhoneAnalysis]:
    """
    Classify a raw phone-like string.

    Returns ``None`` when the input does not look like a phone number (fewer
    than six digits, or a short number matching no known pattern). Numbers
    starting with ``0`` or ``2`` are kept verbatim because those prefixes
    collide with local dialing codes.
    """
    if raw is None:
        return None
    cleaned = PHONE_ALLOWED_CHARS_RE.sub("", str(raw)).strip()
    digits = phone_digits(cleaned)
    if len(digits) < MIN_PHONE_DIGITS:
        return None

    if digits.startswith(("2", "0")):
        return PhoneAnalysis(
            formatted=cleaned,
            country="Unknown",
            region="XX",
            is_valid=len(digits) >= OPAQUE_VALID_DIGITS,
        )

    match = INDIAN_MOBILE_RE.match(digits)
    if match:
        subscriber = match.group(1)
        return PhoneAnalysis(
            formatted=f"+91 {subscriber[:5]} {subscriber[5:]}",
            country="India",
            region="IN",
            is_valid=True,
        )

    match = NANP_RE.match(digits)
    if match:
        number = match.group(1)
        return PhoneAnalysis(
            formatted=f"+1 ({number[:3]}) {number[3:6]}-{number[6:]}",
            country="United States",
            region="US",
            is_valid=True,
        )

    if len(digits) >= OPAQUE_VALID_DIGITS:
        return PhoneAnalysis(
            formatted=cleaned,
            country="Unknown",
            region="XX",
            is_valid=len(digits) >= UNKNOWN_VALID_DIGITS,
        )
    return None


def format_phone_e164_safe(value: str, default_region: str = "IN") -> str:
    """Return an E.164 rendering of ``value`` or an empty string when unparseable."""
    s = (value or "").strip()
    if not s:
        return ""
    try:
        region = None if s.startswith("+") else default_region
        parsed = phonenumbers.parse(s, region)
    except phonenumbers.NumberParseException:
        logger.debug("phonenumbers.parse failed for %s", s)
        return ""
    if not phonenumbers.is_possible_number(parsed):
        return ""
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def phone_match_key(value: str, default_region: str = "IN") -> str:
    return format_phone_e164_safe(value, default_region) or phone_digits(value)


def validate_email_safe(raw: str, check_deliverability: bool = False) -> str:
    candidate = (raw or "").strip()
    if not candidate:
        return ""
    try:
        result = validate_email(candidate, check_deliverability=check_deliverability)
    except EmailNotValidError:
        return ""
    return result.normalized


def is_valid_email(address: str) -> bool:
    return bool(EMAIL_RE.match(address or "")) and bool(validate_email_safe(address))


def extract_emails(text: Any) -> List[str]:
    """Scan free text for addresses; lower-cased, first occurrence wins."""
    if is_blank_cell(text):
        return []
    found = EMAIL_SCAN_RE.findall(str(text))
    seen: List[str] = []
    for address in found:
        lowered = address.strip().lower()
        if lowered and lowered not in seen:
            seen.append(lowered)
    return seen


def name_group_key(name: str) -> str:
    return re.sub(r"\s+", "", (name or "").lower())


def is_blank_cell(value: Any) -> bool:
    if value is None:
        return True
    if not isinstance(value, (list, tuple, dict)):
        try:
            if pd.isna(value):
                return True
        except (TypeError, ValueError):
            return False
    return isinstance(value, str) and value.strip() in EMPTY_CELL_TOKENS


def cell_text(value: Any) -> Optional[str]:
    if is_blank_cell(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


SMALL_WORDS = {
    "a", "an", "and", "as", "at", "but", "by", "for", "from", "in",
    "into", "of", "on", "or", "the", "to", "via", "with",
}
_WORD_DELIMITERS = re.compile(r"([\-/'.&])")


def title_case_human(value: Optional[str]) -> Optional[str]:
    """
    Title-case human-readable text such as names and addresses.

    Emails, URLs, tokens with digits and vowel-less all-caps acronyms are left
    untouched; small words stay lower-case unless they open the value.
    """
    if not value or not isinstance(value, str):
        return value
    s = re.sub(r"\s+", " ", value.strip())
    if not s:
        return s

    def make_title(text: str) -> str:
        return text[:1].upper() + text[1:].lower()

    words: List[str] = []
    for idx, word in enumerate(s.split(" ")):
        if "@" in word or re.match(r"^https?://", word, re.IGNORECASE):
            words.append(word)
            continue
        has_digit = bool(re.search(r"\d", word))
        looks_acronym = bool(re.match(r"^[A-Z][A-Z0-9&.-]*$", word)) and not re.search(
            r"[AEIOU]", word
        )
        if has_digit or looks_acronym:
            words.append(word)
            continue
        parts = _WORD_DELIMITERS.split(word)
        cased: List[str] = []
        for part_idx, part in enumerate(parts):
            if not part or _WORD_DELIMITERS.fullmatch(part):
                cased.append(part)
                continue
            lower = part.lower()
            after_delimiter = part_idx > 0 and bool(_WORD_DELIMITERS.fullmatch(parts[part_idx - 1]))
            if idx == 0 or after_delimiter:
                cased.append(make_title(lower))
            elif lower in SMALL_WORDS:
                cased.append(lower)
            else:
                cased.append(make_title(lower))
        words.append("".join(cased))
    return " ".join(words)


def clean_human_string(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return value
    trimmed = re.sub(r"\s+", " ", value.strip())
    if re.match(r"^\d[\d\s-]*$", trimmed):
        return re.sub(r"\s+", "", trimmed)
    return title_case_human(trimmed)


def read_rows(path: Optional[str], header_starts_with: Optional[str] = None) -> List[List[Any]]:
    """
    Read a CSV or XLSX sheet into positional rows (header row dropped).

    When ``header_starts_with`` is given for a CSV, leading noise lines before
    the matching header are skipped.
    """
    if not path:
        return []
    suffix = Path(path).suffix.lower()
    if suffix in (".xlsx", ".xlsm", ".xls"):
        df = pd.read_excel(path, dtype=str, keep_default_na=False, engine="openpyxl")
    elif header_starts_with:
        with open(path, "r", encoding="utf-8", errors="ignore") as handle:
            lines = handle.read().splitlines()
        header_idx: Optional[int] = None
        for index, line in enumerate(lines[:100]):
            if line.strip().startswith(header_starts_with):
                header_idx = index
                break
        text = "\n".join(lines[header_idx:] if header_idx is not None else lines)
        df = pd.read_csv(StringIO(text), dtype=str, keep_default_na=False)
    else:
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
    rows = df.values.tolist()
    return [row for row in rows if not all(is_blank_cell(value) for value in row)]
