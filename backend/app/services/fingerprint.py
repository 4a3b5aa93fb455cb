"""
NoteDigest Backend — Summary Fingerprints
==========================================

What:  Derives the cache key of a summary from note content and style.
Why:   The cache hit rate depends entirely on which notes are considered
       "the same". The normalization policy below is fixed; changing it
       invalidates every cached summary.

Normalization Policy:
    1. Lowercase
    2. Unicode NFC (composed and decomposed accents compare equal)
    3. Trim leading/trailing whitespace
    4. Collapse every run of whitespace (spaces, tabs, newlines) to one space

    fingerprint = SHA-256( style + "\\x1f" + normalized_content )

    The unit separator keeps the style tag from bleeding into the content.
"""

import hashlib
import re
import unicodedata

from app.schemas.summary import SummaryStyle

_WHITESPACE_RUN = re.compile(r"\s+")
_STYLE_SEPARATOR = "\x1f"


def normalize_content(content: str) -> str:
    """Apply the normalization policy. Empty input yields an empty string."""
    text = unicodedata.normalize("NFC", (content or "").lower())
    return _WHITESPACE_RUN.sub(" ", text.strip())


def content_digest(content: str) -> str:
    """SHA-256 of the normalized content alone, independent of style."""
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def fingerprint(content: str, style: SummaryStyle) -> str:
    """
    Stable 64-character cache key for (content, style).

    Pure and total: identical normalized content and style always give the
    same key, and fingerprint(c, s) == fingerprint(normalize_content(c), s).
    """
    style_tag = SummaryStyle(style).value
    raw = f"{style_tag}{_STYLE_SEPARATOR}{normalize_content(content)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
