"""
Search Configuration and Data Classes

Defines the configuration options, the candidate rows handed in by the
storage layer and the result structures for occurrence search and ranked
document search.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

ELLIPSIS = "…"


@dataclass
class SearchConfig:
    """
    Configuration for occurrence search.

    Attributes:
        radius: Characters of context kept on each side of a match
        default_limit: Page size used when the caller gives none
        max_limit: Upper bound for the page size
        early_stop: Stop expanding candidates once offset + limit hits exist
        highlight_open: Marker placed before the matched text
        highlight_close: Marker placed after the matched text
        ellipsis: Marker for context cut short of the text edges
    """
    radius: int = 50
    default_limit: int = 25
    max_limit: int = 500
    early_stop: bool = False
    highlight_open: str = "<mark>"
    highlight_close: str = "</mark>"
    ellipsis: str = ELLIPSIS

    def clamp_limit(self, limit: Optional[int]) -> int:
        if not limit:
            limit = self.default_limit
        return max(1, min(self.max_limit, limit))

    @staticmethod
    def clamp_offset(offset: Optional[int]) -> int:
        return max(0, offset or 0)


@dataclass
class RankConfig:
    """
    Configuration for ranked (document-level) search.

    Attributes:
        radius: Characters of context around the first match
        default_k: Number of documents returned when the caller gives none
        max_k: Upper bound for k
        candidate_rows: Maximum number of documents scored per query
        name_weight: Multiplier applied to occurrences in the document name
    """
    radius: int = 90
    default_k: int = 10
    max_k: int = 50
    candidate_rows: int = 200
    name_weight: int = 2
    ellipsis: str = ELLIPSIS

    def clamp_k(self, k: Optional[int]) -> int:
        if not k:
            k = self.default_k
        return max(1, min(self.max_k, k))


@dataclass
class ParsedQuery:
    """Search terms extracted from a raw query string."""
    terms: List[str] = field(default_factory=list)
    is_phrase: bool = False

    def __bool__(self) -> bool:
        return bool(self.terms)


@dataclass
class CandidateText:
    """A text body that contains at least one query term."""
    text: str
    document_id: str
    document_name: str
    document_created_at: datetime


@dataclass
class RankedCandidate:
    """A document considered by ranked search; text may be missing."""
    document_id: str
    name: str
    text: Optional[str] = None


@dataclass
class Hit:
    """
    One occurrence of a query term inside a document text.

    Offsets are only valid against the text snapshot they were found in.
    """
    document_id: str
    document_name: str
    match_start: int
    match_end: int
    snippet_html: str
    document_created_at: datetime

    def to_dict(self) -> dict:
        """Convert to the search response shape."""
        return {
            "docId": self.document_id,
            "name": self.document_name,
            "snippetHtml": self.snippet_html,
            "startIndex": self.match_start,
            "endIndex": self.match_end,
        }


@dataclass
class RankedDocument:
    """A document scored by ranked search."""
    id: str
    name: str
    score: int
    snippet: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "score": self.score,
            "snippet": self.snippet,
        }
