"""
US listing address utilities.

Handles:
- Address + city + county normalization for cache keys
- Neighborhood / community name cleanup (null-like tokens, section/phase suffixes)
- House number extraction
"""

import hashlib
import re
import unicodedata

# Tokens that providers (and spreadsheets) use to mean "no value"
NULL_TOKENS = frozenset({
    "",
    "n/a",
    "na",
    "none",
    "null",
    "undefined",
    "unknown",
    "no data",
    "not available",
    "no disponible",
    "no encontrado",
    "no específico",
})

# Trailing plat qualifiers: "Highland Lakes Sec 1" -> "Highland Lakes"
SUFFIX_PATTERNS = [
    re.compile(r"\s+(?:Sec|Section)\s+\d+[A-Z]*\b", re.IGNORECASE),
    re.compile(r"\s+(?:Phase|Ph)\s+\d+[A-Z]*\b", re.IGNORECASE),
    re.compile(r"\s+\d+(?:st|nd|rd|th)\s+(?:Sec|Section)\b", re.IGNORECASE),
    re.compile(r"\s+(?:Unit|Tract)\s+\d+[A-Z]*\b", re.IGNORECASE),
    re.compile(r"\s+(?:Plat|Block)\s+\d+[A-Z]*\b", re.IGNORECASE),
    re.compile(r"\s+(?:Addition|Add)(?:\s+\d+)?$", re.IGNORECASE),
    re.compile(r"\s+(?:Parcel|Lot)\s+\d+[A-Z]*\b", re.IGNORECASE),
]

HOUSE_NUMBER_PATTERN = re.compile(r"^(\d+)\s+")


def normalize_width(text: str) -> str:
    """Fold compatibility characters (full-width digits, ligatures) to ASCII forms."""
    return unicodedata.normalize("NFKC", text)


def normalize_address(address: str, city: str = "", county: str = "") -> str:
    """
    Canonical form of an address used for cache keys.

    Case-folded, width-normalized, whitespace collapsed. City and county are
    appended so the same street in two cities never collides.
    """
    parts = [normalize_width(str(p or "")).strip() for p in (address, city, county)]
    joined = " ".join(parts).lower()
    return re.sub(r"\s+", " ", joined).strip()


def address_cache_key(address: str, city: str = "", county: str = "") -> str:
    """Stable hash of the normalized address."""
    normalized = normalize_address(address, city, county)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]


def is_null_like(value) -> bool:
    """True for None and for strings such as "N/A", "unknown" or blank."""
    if value is None:
        return True
    return str(value).strip().lower() in NULL_TOKENS


def clean_area_name(value) -> str | None:
    """
    Normalize a neighborhood / community string.

    Null-like tokens collapse to None and plat qualifiers are stripped:
    "Cresthaven 6th Sec" -> "Cresthaven", "N/A" -> None.
    """
    if is_null_like(value):
        return None
    cleaned = str(value).strip()
    for pattern in SUFFIX_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or None


def extract_house_number(address: str) -> str | None:
    """Leading street number of an address, if any."""
    if not address:
        return None
    match = HOUSE_NUMBER_PATTERN.match(str(address).strip())
    return match.group(1) if match else None


def build_full_address(*parts) -> str:
    """Join non-empty address components with ", " for provider queries."""
    return ", ".join(str(p).strip() for p in parts if p is not None and str(p).strip())
