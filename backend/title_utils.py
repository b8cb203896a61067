"""
Title name parsing.

Provider catalogs carry raw display names such as "EN - Dune (2021) [4K]".
These helpers split them into a clean search name and a release year.
"""
import logging
import re
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

MIN_YEAR = 1900

# Leading language/country prefix: "EN - ", "FR: ", "US | "
_LANGUAGE_PREFIX = re.compile(r"^[A-Z]{2,3}(?:\s+-\s+|\s*:\s*|\s*\|\s*)")
_BRACKET_TAG = re.compile(r"\[[^\]]*\]|\{[^}]*\}")
_PAREN_YEAR = re.compile(r"\(\s*(\d{4})(?:\s*-\s*\d{4})?\s*\)")
_PAREN_INDEX = re.compile(r"\(\d{1,3}\)")
_TRAILING_EPISODE = re.compile(r"\s+S\d{1,2}\s*E\d{1,3}\s*$", re.IGNORECASE)
_QUALITY_TOKENS = re.compile(
    r"\b(?:4K|UHD|FHD|HD|SD|HDR10|HDR|2160p|1080p|720p|480p|x264|x265|X264|X265|"
    r"HEVC|H\.?264|H\.?265|10bit|10BIT)\b"
)
_EDGE_SEPARATORS = re.compile(r"^[\s\-:|.,]+|[\s\-:|.,]+$")
_WHITESPACE = re.compile(r"\s+")

_YEAR_OPEN_PAREN = re.compile(r"\((\d{4})")
_YEAR_TRAILING_BRACKET = re.compile(r"\[(\d{4})\]\s*$")
_YEAR_TRAILING = re.compile(r"\s(\d{4})\s*$")
_YEAR_PREFIX = re.compile(r"^(\d{4})")


def _valid_year(value: str) -> Optional[int]:
    year = int(value)
    if MIN_YEAR <= year <= datetime.utcnow().year + 1:
        return year
    return None


def _collapse(text: str) -> str:
    text = _WHITESPACE.sub(" ", text)
    return _EDGE_SEPARATORS.sub("", text)


def strip_quality_tokens(text: str) -> str:
    """Remove resolution and codec tokens."""
    return _collapse(_QUALITY_TOKENS.sub(" ", text))


def apply_cleanup(text: str, cleanup: Optional[dict]) -> str:
    """
    Apply provider cleanup rules ({pattern: replacement}) in order.
    Invalid patterns are logged and skipped.
    """
    for pattern, replacement in (cleanup or {}).items():
        try:
            text = re.sub(pattern, replacement or "", text)
        except re.error as e:
            logger.warning(f"Invalid cleanup pattern {pattern!r}: {e}")
    return text.strip()


def extract_year(title: str) -> Optional[int]:
    """
    Extract a release year.

    Recognised forms, in order: "(2024" anywhere (covers "(2024-2025)"),
    a trailing "[2024]" and a trailing " 2024".
    """
    if not title:
        return None
    text = strip_quality_tokens(title)
    for pattern in (_YEAR_OPEN_PAREN, _YEAR_TRAILING_BRACKET, _YEAR_TRAILING):
        match = pattern.search(text)
        if match:
            year = _valid_year(match.group(1))
            if year:
                return year
    return None


def extract_base_title(title: str) -> str:
    """Strip prefixes, tags, years, episode markers and quality tokens."""
    if not title:
        return title
    text = _LANGUAGE_PREFIX.sub("", title.strip())
    text = _BRACKET_TAG.sub(" ", text)
    text = _QUALITY_TOKENS.sub(" ", text)
    text = _PAREN_YEAR.sub(" ", text)
    text = _PAREN_INDEX.sub(" ", text)
    text = _TRAILING_EPISODE.sub("", _collapse(text))

    trailing = _YEAR_TRAILING.search(text)
    if trailing and _valid_year(trailing.group(1)) and text[:trailing.start()].strip():
        text = text[:trailing.start()]

    name = _collapse(text)
    return name or title.strip()


def parse_title(raw: str, cleanup: Optional[dict] = None) -> tuple[str, Optional[int]]:
    """Split a raw provider name into (name, year)."""
    text = apply_cleanup(raw or "", cleanup)
    return extract_base_title(text), extract_year(text)


def year_from_release_date(release_date) -> Optional[int]:
    """Year of a date string: "2025-10-15" -> 2025."""
    if not release_date:
        return None
    match = _YEAR_PREFIX.match(str(release_date).strip())
    return _valid_year(match.group(1)) if match else None
