"""Raw scanner text normalization."""

from __future__ import annotations

import re

GS = chr(29)

# ]C1 GS1-128, ]d2 GS1 DataMatrix, ]Q3 GS1 QR, ]e0 GS1 DataBar
_SYMBOLOGY_PREFIX_RE = re.compile(r"^\]?(?:C1|D2|Q3|E0)", re.IGNORECASE)
# Python's \s also matches chr(28)..chr(31); GS must survive whitespace removal.
_WHITESPACE_RE = re.compile(r"[^\S\x1c-\x1f]+")
_TRIM_RE = re.compile(r"^[^\S\x1c-\x1f]+|[^\S\x1c-\x1f]+$")
_PARENS_RE = re.compile(r"[()]")
_GS_ESCAPE_RE = re.compile(r"\\u001d|\\x1d|<GS>", re.IGNORECASE)


def normalize(raw: str | None) -> str:
    """Return scanner output reduced to bare AI text with real GS characters.

    Unrecognized constructs pass through untouched; the segmenter decides what
    to do with them. The pass is repeated until the text is stable so that
    normalizing twice never changes the result.
    """
    if not raw:
        return ""
    text = str(raw)
    while True:
        normalized = _normalize_once(text)
        if normalized == text:
            return normalized
        text = normalized


def _normalize_once(text: str) -> str:
    text = _TRIM_RE.sub("", text)
    text = _SYMBOLOGY_PREFIX_RE.sub("", text, count=1)
    text = _WHITESPACE_RE.sub("", text)
    # (01)...(17)... -> 01...17...; AIs are then found positionally.
    text = _PARENS_RE.sub("", text)
    return _GS_ESCAPE_RE.sub(GS, text)
