"""German address parsing and comparison for cross-platform matching."""

import re
from dataclasses import dataclass, field
from typing import Any, Final

from immo_watch.utils.parsing import round_half_up

# Street type words and abbreviations -> normalized form
STREET_TYPE_MAPPINGS: Final[dict[str, str]] = {
    "str": "strasse",
    "str.": "strasse",
    "straße": "strasse",
    "strasse": "strasse",
    "pl": "platz",
    "pl.": "platz",
    "platz": "platz",
    "wg": "weg",
    "wg.": "weg",
    "weg": "weg",
    "al": "allee",
    "al.": "allee",
    "allee": "allee",
    "gasse": "gasse",
    "ring": "ring",
    "damm": "damm",
    "ufer": "ufer",
    "chaussee": "chaussee",
    "promenade": "promenade",
    "steig": "steig",
    "stieg": "stieg",
    "pfad": "pfad",
    "brücke": "bruecke",
    "bruecke": "bruecke",
}

# Abbreviations glued to the street name, e.g. "Musterstr." or "Marktpl."
_COMPOUND_SUFFIXES: Final = (("str.", "strasse"), ("str", "strasse"), ("pl.", "platz"))

# Endings that mark a word as a street rather than a city
_STREET_WORD_ENDINGS: Final = (
    "strasse",
    "straße",
    "str.",
    "str",
    "platz",
    "allee",
    "weg",
    "gasse",
    "damm",
    "ufer",
    "chaussee",
)

UMLAUT_MAP: Final[dict[str, str]] = {
    "ä": "ae",
    "ö": "oe",
    "ü": "ue",
    "ß": "ss",
    "Ä": "ae",
    "Ö": "oe",
    "Ü": "ue",
}

_UMLAUT_PATTERN: Final = re.compile("[äöüßÄÖÜ]")

# 5-digit PLZ, optionally prefixed with D- or DE-
_ZIP_PATTERN: Final = re.compile(r"(?:^|[\s,])(?:D-?|DE-?)?(\d{5})(?:[\s,]|$)")

# 12, 12a, 12 a, 12-14, 12a-14b, 12/14
_HOUSE_NUMBER_PATTERN: Final = re.compile(
    r"\s(\d+(?:\s?[a-zA-Z])?(?:\s?[-–/]\s?\d+(?:\s?[a-zA-Z])?)?)(?:\s|,|$)"
)

_PAREN_DISTRICT_PATTERN: Final = re.compile(r"([^(]+)\s*\(([^)]+)\)")
_DASH_DISTRICT_PATTERN: Final = re.compile(
    r"([A-Za-zäöüÄÖÜß]+)-([A-Za-zäöüÄÖÜß]+)(?:\s|,|$)"
)

_STREET_PREFIX_PATTERN: Final = re.compile(
    r"^(am|an der|an dem|im|in der|in dem|auf der|auf dem|zur|zum)\s+"
)

_HOUSE_NUMBER_SEPARATORS: Final = re.compile(r"[-–/]")

# Points awarded by compare_addresses
SCORE_ZIP: Final = 25
SCORE_CITY: Final = 15
SCORE_STREET: Final = 40
SCORE_HOUSE_NUMBER: Final = 20
SCORE_HOUSE_NUMBER_BASE: Final = 10

STREET_MATCH_THRESHOLD: Final = 0.8


@dataclass(frozen=True)
class ParsedAddress:
    """Components of a free-text address. Text fields are lower-cased and transliterated."""

    original: str = ""
    normalized: str = ""
    zip_code: str | None = None
    city: str | None = None
    district: str | None = None
    street: str | None = None
    house_number: str | None = None

    @property
    def tokens(self) -> list[str]:
        """Whitespace tokens of the normalized form."""
        return self.normalized.split()


@dataclass(frozen=True)
class AddressComparison:
    """Result of comparing two addresses."""

    score: int
    details: dict[str, Any] = field(default_factory=dict)
    parsed1: ParsedAddress = field(default_factory=ParsedAddress)
    parsed2: ParsedAddress = field(default_factory=ParsedAddress)


def replace_umlauts(text: str | None) -> str:
    """Replace German umlauts and ß with their ASCII spellings."""
    if not text:
        return ""
    return _UMLAUT_PATTERN.sub(lambda m: UMLAUT_MAP[m.group(0)], text)


def extract_zip_code(address: str | None) -> tuple[str | None, str]:
    """Split a German postcode off an address.

    Args:
        address: Free-text address.

    Returns:
        Tuple of (zip code or None, address with the zip code removed).
    """
    if not address:
        return None, ""
    match = _ZIP_PATTERN.search(address)
    if not match:
        return None, address
    return match.group(1), address.replace(match.group(0), " ", 1).strip()


def extract_house_number(address: str | None) -> tuple[str | None, str]:
    """Split a house number off an address.

    The number must follow whitespace, so leading postcodes are never taken for
    house numbers. Spaces are dropped and letters lower-cased ("12 A" -> "12a").

    Returns:
        Tuple of (house number or None, address with the number removed).
    """
    if not address:
        return None, ""
    match = _HOUSE_NUMBER_PATTERN.search(address)
    if not match:
        return None, address
    house_number = re.sub(r"\s+", "", match.group(1)).lower()
    return house_number, address.replace(match.group(0), " ", 1).strip()


def _is_street_word(word: str) -> bool:
    lowered = word.lower()
    if lowered in STREET_TYPE_MAPPINGS:
        return True
    return lowered.endswith(_STREET_WORD_ENDINGS)


def _find_city_and_district(address: str) -> tuple[str | None, str | None, str | None]:
    """Return (city, district, raw city word) for an address without postcode."""
    district: str | None = None

    paren_match = _PAREN_DISTRICT_PATTERN.search(address)
    if paren_match:
        district = paren_match.group(2).strip()
        address = _PAREN_DISTRICT_PATTERN.sub(r"\1", address)

    # Only the last comma-separated part can hold "City-District", streets like
    # "Karl-Marx-Allee" would match as well otherwise
    last_segment = address.rsplit(",", 1)[-1]
    dash_match = _DASH_DISTRICT_PATTERN.search(last_segment)
    if dash_match and district is None:
        district = dash_match.group(2)

    city_word: str | None = None
    for word in reversed([w for w in re.split(r"[\s,]+", address) if w]):
        if word[0].isdigit():
            continue
        if len(word) < 3:
            continue
        if _is_street_word(word):
            continue
        city_word = word
        break

    if city_word is None:
        return None, district, None

    city = city_word
    if dash_match and dash_match.group(0).rstrip(" ,").endswith(city_word):
        city = dash_match.group(1)
    return city, district, city_word


def extract_city_and_district(address: str | None) -> tuple[str | None, str | None]:
    """Find the city and, when given, the district of an address.

    Districts are recognised in parentheses ("Berlin (Mitte)") or in the
    hyphenated form ("Berlin-Mitte"). The city is the last word of at least
    three characters that is neither a number nor a street name.

    Returns:
        Tuple of (city, district) in their original spelling.
    """
    if not address:
        return None, None
    _, without_zip = extract_zip_code(address)
    city, district, _ = _find_city_and_district(without_zip)
    return city, district


def _expand_street_token(token: str) -> str:
    if token in STREET_TYPE_MAPPINGS:
        return STREET_TYPE_MAPPINGS[token]
    bare = token.rstrip(".")
    if bare in STREET_TYPE_MAPPINGS:
        return STREET_TYPE_MAPPINGS[bare]
    for suffix, full in _COMPOUND_SUFFIXES:
        if token.endswith(suffix) and len(token) > len(suffix):
            return token[: -len(suffix)] + full
    return bare


def normalize_street_name(street: str | None) -> str:
    """Normalize a street name for comparison.

    Lower-cases, transliterates umlauts, drops leading prepositions ("Am",
    "In der", ...) and expands street type abbreviations.

    Example:
        >>> normalize_street_name("Am Goethestr.")
        'goethestrasse'
    """
    if not street:
        return ""
    normalized = replace_umlauts(street.lower())
    normalized = _STREET_PREFIX_PATTERN.sub("", normalized.strip())
    tokens = [_expand_street_token(t) for t in normalized.replace(",", " ").split()]
    return " ".join(t for t in tokens if t)


def parse_address(address: str | None) -> ParsedAddress:
    """Parse a free-text German address into comparable components.

    Never raises; unparseable parts are None.

    Args:
        address: Address as shown on a listing, e.g. "Musterstr. 12, 10115 Berlin".

    Returns:
        ParsedAddress with street, house number, zip code and city joined into
        ``normalized``.
    """
    if not address:
        return ParsedAddress()

    zip_code, without_zip = extract_zip_code(address)
    house_number, without_number = extract_house_number(without_zip)
    city, district, city_word = _find_city_and_district(without_zip)

    street = without_number
    if city_word:
        street = re.sub(rf"(?<!\w){re.escape(city_word)}(?!\w)", "", street, flags=re.IGNORECASE)
    street = re.sub(r"\([^)]+\)", "", street)
    street = street.replace(",", " ").strip()
    normalized_street = normalize_street_name(street)

    city_normalized = replace_umlauts(city.lower()) if city else None
    parts = [p for p in (normalized_street, house_number, zip_code, city_normalized) if p]

    return ParsedAddress(
        original=address,
        normalized=" ".join(parts),
        zip_code=zip_code,
        city=city_normalized,
        district=replace_umlauts(district.lower()) if district else None,
        street=normalized_street or None,
        house_number=house_number,
    )


def fuzzy_string_match(str1: str | None, str2: str | None) -> float:
    """Similarity of two short strings between 0 and 1.

    Exact matches score 1. When one string contains the other the score is the
    length ratio, otherwise the share of tokens that equal or contain a token of
    the other string.
    """
    if not str1 or not str2:
        return 0.0
    if str1 == str2:
        return 1.0

    s1 = str1.lower()
    s2 = str2.lower()
    if s1 in s2 or s2 in s1:
        return min(len(s1), len(s2)) / max(len(s1), len(s2))

    tokens1 = s1.split()
    tokens2 = s2.split()
    matched = sum(
        1 for t1 in tokens1 if any(t1 == t2 or t2 in t1 or t1 in t2 for t2 in tokens2)
    )
    total = max(len(tokens1), len(tokens2))
    return matched / total if total else 0.0


def compare_addresses(address1: str | None, address2: str | None) -> AddressComparison:
    """Score how likely two addresses describe the same place (0-100).

    Zip code 25, city 15, street up to 40 (fuzzy), house number 20 or 10 when
    only the start of a range matches. Missing parts contribute nothing.
    """
    parsed1 = parse_address(address1)
    parsed2 = parse_address(address2)

    score = 0
    details: dict[str, Any] = {
        "zip_match": False,
        "city_match": False,
        "street_match": False,
        "house_number_match": False,
    }

    if parsed1.zip_code and parsed2.zip_code and parsed1.zip_code == parsed2.zip_code:
        score += SCORE_ZIP
        details["zip_match"] = True

    if parsed1.city and parsed2.city and parsed1.city == parsed2.city:
        score += SCORE_CITY
        details["city_match"] = True

    if parsed1.street and parsed2.street:
        street_similarity = fuzzy_string_match(parsed1.street, parsed2.street)
        score += round_half_up(street_similarity * SCORE_STREET)
        details["street_match"] = street_similarity >= STREET_MATCH_THRESHOLD
        details["street_similarity"] = street_similarity

    if parsed1.house_number and parsed2.house_number:
        norm1 = _HOUSE_NUMBER_SEPARATORS.sub("-", parsed1.house_number)
        norm2 = _HOUSE_NUMBER_SEPARATORS.sub("-", parsed2.house_number)
        if norm1 == norm2:
            score += SCORE_HOUSE_NUMBER
            details["house_number_match"] = True
        elif norm1.split("-")[0] == norm2.split("-")[0]:
            score += SCORE_HOUSE_NUMBER_BASE
            details["house_number_partial_match"] = True

    return AddressComparison(score=score, details=details, parsed1=parsed1, parsed2=parsed2)


def normalize_house_number(house_number: str | None) -> str | None:
    """House number with range separators unified to '-'."""
    if not house_number:
        return None
    return _HOUSE_NUMBER_SEPARATORS.sub("-", house_number)
