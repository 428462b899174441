from __future__ import annotations

import re
import unicodedata
from typing import Optional


_PARENS_CONTENT_PATTERN = re.compile(r"\([^)]*\)")
_BRACKETS_CONTENT_PATTERN = re.compile(r"\[[^\]]*\]")
# Edition qualifiers that do not change which recording a title refers to.
_QUALIFIER_PATTERN = re.compile(
    r"\b(remaster(?:ed)?|deluxe(?:\sedition)?|explicit|clean|bonus\strack(?:s)?|single|"
    r"album\sversion|radio\sedit|original\smix|version|mono|stereo|spatial|dolby|feat\.?|featuring)\b"
)
_NON_ALNUM_SPACE_PATTERN = re.compile(r"[^a-z0-9\s]")
_MULTISPACE_PATTERN = re.compile(r"\s+")

LIVE_PATTERN = r"\blive\b"
REMIX_PATTERN = r"\bremix\b"
COMPILATION_PATTERN = (
    r"(greatest\s+hits|essentials|the\s+collection|best\s+of|antholog(y|ies)|"
    r"the\s+very\s+best|collection|compilation)"
)

DURATION_BUCKET_MS = 5000


def _strip_diacritics(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(c for c in normalized if not unicodedata.combining(c))


def normalize_string(value: Optional[str]) -> str:
    """Lowercase, drop bracketed content and edition qualifiers, keep [a-z0-9] tokens."""
    if not value:
        return ""
    value = _strip_diacritics(str(value)).lower()
    value = _PARENS_CONTENT_PATTERN.sub(" ", value)
    value = _BRACKETS_CONTENT_PATTERN.sub(" ", value)
    value = _QUALIFIER_PATTERN.sub(" ", value)
    value = _NON_ALNUM_SPACE_PATTERN.sub(" ", value)
    return _MULTISPACE_PATTERN.sub(" ", value).strip()


def tokenize(value: Optional[str]) -> set:
    return {tok for tok in normalize_string(value).split(" ") if tok}


def jaccard_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Token-set Jaccard similarity of two normalized strings.

    Two empty token sets are considered identical (1.0).
    """
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a and not tokens_b:
        return 1.0
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def album_relation(source_album_norm: str, candidate_album_norm: str) -> str:
    """Return 'exact', 'partial' or 'none' for two already-normalized album names."""
    if not source_album_norm or not candidate_album_norm:
        return "none"
    if source_album_norm == candidate_album_norm:
        return "exact"
    if source_album_norm in candidate_album_norm or candidate_album_norm in source_album_norm:
        return "partial"
    return "none"


def duration_within(source_ms: Optional[int], candidate_ms: Optional[int], tolerance_ms: int) -> bool:
    if not candidate_ms:
        return False
    return abs(int(candidate_ms) - int(source_ms or 0)) <= tolerance_ms


def duration_bucket(duration_ms: Optional[int], bucket_ms: int = DURATION_BUCKET_MS) -> int:
    if not duration_ms or duration_ms < 0:
        return 0
    return int(round(duration_ms / max(1, bucket_ms)))


def composite_key(name: str, artist: str, album: str, duration_ms: Optional[int]) -> str:
    """Composite fingerprint used when no shared identifier exists."""
    return (
        f"meta:{normalize_string(name)}|{normalize_string(artist)}|"
        f"{normalize_string(album)}|{duration_bucket(duration_ms)}"
    )



def is_library_id(item_id: str) -> bool:
    """Library-scoped Apple Music song ids are prefixed with `i.`; catalog ids are numeric."""
    return str(item_id).startswith('i.')
