"""Utility helpers used across the project."""

from __future__ import annotations

import json
import logging
import math
import re
import unicodedata
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional


LOGGER = logging.getLogger(__name__)


STOPWORDS_PT = {
    "de",
    "da",
    "do",
    "das",
    "dos",
    "para",
    "com",
    "em",
    "sem",
    "uma",
    "um",
    "e",
    "ou",
    "a",
    "o",
    "as",
    "os",
}


def ensure_directory(path: Path) -> None:
    """Create ``path`` when it does not exist."""

    path.mkdir(parents=True, exist_ok=True)


def strip_accents(text: str) -> str:
    """Remove diacritics from ``text``."""

    normalized = unicodedata.normalize("NFD", text)
    return "".join(char for char in normalized if unicodedata.category(char) != "Mn")


def normalize_text(text: str, stopwords: Iterable[str] | None = None) -> str:
    """Normalise text for comparisons.

    * lowercase
    * remove accents
    * remove punctuation
    * collapse whitespace
    * drop stop words
    """

    if text is None:
        return ""

    text = strip_accents(text).lower()
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    words = [word for word in text.split() if word]
    if stopwords is None:
        stopwords = STOPWORDS_PT
    filtered = [word for word in words if word not in stopwords]
    return " ".join(filtered)


def only_digits(value: Optional[str]) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def normalize_barcode(value: Optional[str]) -> Optional[str]:
    digits = only_digits(value)
    # "SEM GTIN" and all-zero placeholders are common in NF-e files
    if not digits or set(digits) == {"0"}:
        return None
    return digits


def normalize_code(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    return value.upper()


def person_type(tax_id: str) -> str:
    """``PJ`` for a 14 digit CNPJ, ``PF`` otherwise."""

    return "PJ" if len(only_digits(tax_id)) == 14 else "PF"


def safe_float(value, default: float = 0.0) -> float:
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result):
        return default
    return result


def safe_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse ISO dates and date-times (with or without offset) into a ``date``."""

    if not value:
        return None
    value = value.strip()
    try:
        if value.endswith("Z"):
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        return datetime.fromisoformat(value).date()
    except ValueError:
        try:
            return datetime.strptime(value[:10], "%Y-%m-%d").date()
        except ValueError:
            LOGGER.debug("Unable to parse date value '%s'", value)
            return None


def money_equals(a: float, b: float, tolerance: float = 0.01) -> bool:
    return abs(a - b) < tolerance


def round_money(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100.0


def now_timestamp() -> str:
    return datetime.utcnow().strftime("%Y%m%dT%H%M%S")


def dump_json(path: Path, data) -> None:
    ensure_directory(path.parent)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, ensure_ascii=False, indent=2, default=str)


def load_json(path: Path) -> Optional[dict]:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


__all__ = [
    "ensure_directory",
    "strip_accents",
    "normalize_text",
    "only_digits",
    "normalize_barcode",
    "normalize_code",
    "person_type",
    "safe_float",
    "safe_int",
    "parse_date",
    "money_equals",
    "round_money",
    "now_timestamp",
    "dump_json",
    "load_json",
    "STOPWORDS_PT",
]
