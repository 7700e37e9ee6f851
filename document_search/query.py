"""
Query parsing and occurrence scanning primitives

Matching is case-insensitive and runs on the original text, so reported
offsets always index the stored text even where lowercasing would change
its length (for example "İ").
"""

import re
from functools import lru_cache
from typing import List, Optional, Tuple

from .config import ParsedQuery

_PHRASE_PATTERN = re.compile(r'"([^"]+)"')


def parse_query(query: str) -> ParsedQuery:
    """
    Split a raw query into search terms.

    A double-quoted substring makes the query a phrase query whose only term
    is the quoted text. Otherwise the query is split on whitespace and every
    token is an independent term.

    Example:
        >>> parse_query('invoice "net 30" due').terms
        ['net 30']
        >>> parse_query('net 30').terms
        ['net', '30']
    """
    match = _PHRASE_PATTERN.search(query or "")
    if match:
        return ParsedQuery(terms=[match.group(1)], is_phrase=True)
    return ParsedQuery(terms=(query or "").split(), is_phrase=False)


@lru_cache(maxsize=256)
def _term_pattern(term: str):
    return re.compile(re.escape(term), re.IGNORECASE)


def find_all(haystack: str, needle: str) -> List[Tuple[int, int]]:
    """
    Return the (start, end) span of every non-overlapping occurrence.

    Scanning resumes at the end of each match, so "aa" occurs twice in
    "aaaa", not three times. An empty needle never matches.
    """
    if not needle:
        return []
    return [match.span() for match in _term_pattern(needle).finditer(haystack)]


def count_occurrences(haystack: str, parsed: ParsedQuery) -> int:
    """Total case-insensitive occurrences of all query terms."""
    return sum(len(find_all(haystack, term)) for term in parsed.terms)


def first_match(haystack: str, parsed: ParsedQuery) -> Optional[Tuple[int, int]]:
    """
    Locate the first match used for a document-level snippet.

    Terms are tried in query order; the first term that occurs anywhere
    wins, even if a later term occurs earlier in the text.

    Returns:
        (start, end) tuple, or None when nothing matches
    """
    for term in parsed.terms:
        if not term:
            continue
        match = _term_pattern(term).search(haystack)
        if match:
            return match.span()
    return None
