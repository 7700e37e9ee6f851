"""
Occurrence Search Module for Document Texts

Provides two search modes over stored document texts:
- Occurrence search: every match reported as its own hit with an HTML snippet
- Ranked search: one result per document, scored by occurrence count
"""

from .config import (
    CandidateText,
    Hit,
    ParsedQuery,
    RankConfig,
    RankedCandidate,
    RankedDocument,
    SearchConfig,
)
from .query import count_occurrences, find_all, first_match, parse_query
from .searcher import OccurrenceSearcher, RankedSearcher
from .snippets import build_plain_snippet, build_snippet_html, escape_html

__all__ = [
    "CandidateText",
    "Hit",
    "OccurrenceSearcher",
    "ParsedQuery",
    "RankConfig",
    "RankedCandidate",
    "RankedDocument",
    "RankedSearcher",
    "SearchConfig",
    "build_plain_snippet",
    "build_snippet_html",
    "count_occurrences",
    "escape_html",
    "find_all",
    "first_match",
    "parse_query",
]
