"""Text helpers shared by curation and retrieval: terms and token estimates."""

import re
from typing import List, Set

from .constants import Defaults

_TERM_RE = re.compile(r"[a-z0-9][a-z0-9_\-]*")

STOPWORDS = frozenset("""
a an and are as at be been but by can do does for from has have how i if in
into is it its me my no not of on or our should so than that the their them
then there these they this to was we were what when where which who why will
with you your always never must avoid pitfall
""".split())


def terms(text: str) -> List[str]:
    """Lower-cased content terms of ``text`` in order, stopwords removed."""
    if not text:
        return []
    found = []
    for raw in _TERM_RE.findall(text.lower()):
        term = raw.strip("-_")
        if len(term) > 1 and term not in STOPWORDS:
            found.append(term)
    return found


def term_set(text: str) -> Set[str]:
    return set(terms(text))


def estimate_tokens(text: str) -> int:
    """Roughly four characters per token; any non-empty text costs at least one."""
    if not text:
        return 0
    return max(1, (len(text) + Defaults.CHARS_PER_TOKEN - 1) // Defaults.CHARS_PER_TOKEN)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut ``text`` at a word boundary so it fits ``max_tokens``, marking the cut."""
    if estimate_tokens(text) <= max_tokens:
        return text
    max_chars = max_tokens * Defaults.CHARS_PER_TOKEN
    if max_chars <= 3:
        return text[:max(max_chars, 0)]

    target = max_chars - 3
    truncated = text[:target]
    last_space = truncated.rfind(" ")
    if last_space > target // 2:
        truncated = truncated[:last_space]
    return truncated.rstrip() + "..."
