"""
Occurrence and ranked searchers over document texts

Both searchers are pure functions of the query and of the candidate rows
returned by a storage collaborator; they never touch the database directly.
"""

import logging
from typing import Callable, Iterator, List, Optional, Set, Tuple

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
from .snippets import build_plain_snippet, build_snippet_html

logger = logging.getLogger(__name__)

# (terms, document_id, max_rows) -> candidates, newest document first
CandidateFetcher = Callable[[List[str], Optional[str], int], List[CandidateText]]
# (terms, max_rows) -> candidates, newest document first
RankedCandidateFetcher = Callable[[List[str], int], List[RankedCandidate]]


class OccurrenceSearcher:
    """
    Finds every occurrence of a query across document texts.

    Each occurrence becomes its own Hit with a highlighted snippet. Hits are
    ordered newest document first, then by match position, and paginated
    after sorting.

    Example:
        >>> searcher = OccurrenceSearcher(storage.find_candidate_texts)
        >>> hits = searcher.search('"net 30"', limit=10)
    """

    def __init__(self, fetch_candidates: CandidateFetcher,
                 config: Optional[SearchConfig] = None):
        self.fetch_candidates = fetch_candidates
        self.config = config or SearchConfig()

    def search(self, query: str, limit: Optional[int] = None, offset: Optional[int] = 0,
               document_id: Optional[str] = None) -> List[Hit]:
        """
        Execute an occurrence search.

        Args:
            query: Phrase ("...") or whitespace-separated terms
            limit: Page size, clamped to 1..max_limit
            offset: Number of sorted hits to skip, clamped to >= 0
            document_id: Restrict the search to one document

        Returns:
            One page of Hit objects
        """
        take = self.config.clamp_limit(limit)
        skip = self.config.clamp_offset(offset)

        parsed = parse_query(query)
        if not parsed:
            return []

        wanted = take + skip
        candidates = self.fetch_candidates(parsed.terms, document_id, wanted)

        hits: List[Hit] = []
        for candidate in candidates:
            if not candidate.text:
                continue
            for hit in self.expand(candidate, parsed):
                hits.append(hit)
                if self.config.early_stop and len(hits) >= wanted:
                    break
            if self.config.early_stop and len(hits) >= wanted:
                logger.debug(f"Early stop after {len(hits)} hits")
                break

        self.sort_hits(hits)
        return hits[skip:skip + take]

    def expand(self, candidate: CandidateText, parsed: ParsedQuery) -> Iterator[Hit]:
        """Yield one Hit per distinct (start, end) match in a candidate text."""
        text = candidate.text
        seen: Set[Tuple[int, int]] = set()

        for term in parsed.terms:
            for start, end in find_all(text, term):
                if (start, end) in seen:
                    continue
                seen.add((start, end))

                yield Hit(
                    document_id=candidate.document_id,
                    document_name=candidate.document_name,
                    match_start=start,
                    match_end=end,
                    snippet_html=build_snippet_html(
                        text, start, end,
                        radius=self.config.radius,
                        highlight_open=self.config.highlight_open,
                        highlight_close=self.config.highlight_close,
                        ellipsis=self.config.ellipsis,
                    ),
                    document_created_at=candidate.document_created_at,
                )

    @staticmethod
    def sort_hits(hits: List[Hit]) -> None:
        """Newest document first, then match start; ties keep scan order."""
        hits.sort(key=lambda h: h.match_start)
        hits.sort(key=lambda h: h.document_created_at, reverse=True)


class RankedSearcher:
    """
    Scores whole documents by how often the query occurs in them.

    Name occurrences weigh more than body occurrences. Each document carries
    a single plain-text snippet around its first match.
    """

    def __init__(self, fetch_candidates: RankedCandidateFetcher,
                 config: Optional[RankConfig] = None):
        self.fetch_candidates = fetch_candidates
        self.config = config or RankConfig()

    def rank(self, query: str, k: Optional[int] = None) -> List[RankedDocument]:
        """Return the top-k documents by score, highest first."""
        top_k = self.config.clamp_k(k)
        parsed = parse_query(query)
        if not parsed:
            return []

        candidates = self.fetch_candidates(parsed.terms, self.config.candidate_rows)

        ranked = []
        for candidate in candidates:
            document = self.score(candidate, parsed)
            if document.score > 0:
                ranked.append(document)

        ranked.sort(key=lambda d: d.score, reverse=True)
        return ranked[:top_k]

    def score(self, candidate: RankedCandidate, parsed: ParsedQuery) -> RankedDocument:
        name_score = count_occurrences(candidate.name or "", parsed) * self.config.name_weight
        text_score = count_occurrences(candidate.text, parsed) if candidate.text else 0

        if candidate.text:
            snippet = self.snippet(candidate.text, parsed)
        else:
            snippet = candidate.name

        return RankedDocument(
            id=candidate.document_id,
            name=candidate.name,
            score=name_score + text_score,
            snippet=snippet,
        )

    def snippet(self, text: str, parsed: ParsedQuery) -> str:
        match = first_match(text, parsed)
        if match is None:
            return ""
        start, end = match
        return build_plain_snippet(
            text, start, end, radius=self.config.radius, ellipsis=self.config.ellipsis
        )
