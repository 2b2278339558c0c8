# backend/photo_analysis/text_match.py
"""
Accent/case/space-insensitive matching of taxonomy labels.

"Ar-Condicionado", "AR CONDICIONADO" and "arcondicionado" all normalize to the
same key, so photo labels and model replies can be compared against item names
without caring how they were typed.
"""
import re
import unicodedata
from typing import Iterable, List, Optional

STOP_WORDS = {
    "o", "a", "os", "as", "um", "uma", "uns", "umas",
    "de", "da", "do", "das", "dos", "em", "na", "no", "nas", "nos",
    "e", "ou", "que", "para", "com", "por", "se", "é", "são",
    "este", "esta", "esse", "essa", "isso", "isto",
    "sim", "não", "nao", "the", "is", "it", "this", "that",
}

_PUNCTUATION = re.compile(r"[.,!?;:()\[\]{}'\"]")


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize(text: Optional[str]) -> str:
    if not text:
        return ""
    text = _strip_accents(text.lower())
    text = re.sub(r"[-_]", " ", text)
    return re.sub(r"\s+", "", text)


def text_matches(a: Optional[str], b: Optional[str]) -> bool:
    return normalize(a) == normalize(b)


def find_exact(needle: str, candidates: Iterable[str]) -> Optional[str]:
    """Return the original candidate whose normalized form equals the needle's."""
    key = normalize(needle)
    for candidate in candidates:
        if normalize(candidate) == key:
            return candidate
    return None


def keywords(text: Optional[str]) -> List[str]:
    if not text:
        return []
    text = _strip_accents(text.lower())
    text = _PUNCTUATION.sub(" ", text)
    return [word for word in text.split() if len(word) > 2 and word not in STOP_WORDS]


def resolve(reply: Optional[str], candidates: List[str]) -> Optional[str]:
    """
    Pick the candidate a free-text model reply refers to.
    Exact normalized match first, then any extracted keyword, then containment
    either way. First hit wins; None when nothing matches.
    """
    if not reply or not candidates:
        return None

    exact = find_exact(reply, candidates)
    if exact is not None:
        return exact

    for word in keywords(reply):
        match = find_exact(word, candidates)
        if match is not None:
            return match

    normalized_reply = normalize(reply)
    for candidate in candidates:
        normalized_candidate = normalize(candidate)
        if not normalized_candidate:
            continue
        if normalized_candidate in normalized_reply or normalized_reply in normalized_candidate:
            return candidate

    return None
