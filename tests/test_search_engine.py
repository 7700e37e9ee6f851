"""
Tests for the document_search package

The searchers are exercised with in-memory candidate fetchers, so no
database is involved.
"""
from datetime import datetime, timedelta

import pytest

from document_search import (
    CandidateText,
    OccurrenceSearcher,
    RankConfig,
    RankedCandidate,
    RankedSearcher,
    SearchConfig,
    build_plain_snippet,
    build_snippet_html,
    count_occurrences,
    escape_html,
    find_all,
    first_match,
    parse_query,
)

NOW = datetime(2024, 5, 1, 12, 0, 0)

INVOICE_TEXT = "net 30 days, net terms, 30 units"


class FakeFetcher:
    """Returns fixed candidates and records the arguments it was called with"""

    def __init__(self, candidates):
        self.candidates = candidates
        self.calls = []

    def __call__(self, terms, *args):
        self.calls.append((list(terms),) + args)
        return list(self.candidates)


def candidate(text, document_id="doc-1", name="doc.txt", age_minutes=0):
    return CandidateText(
        text=text,
        document_id=document_id,
        document_name=name,
        document_created_at=NOW - timedelta(minutes=age_minutes),
    )


class TestQueryParsing:

    def test_terms_split_on_whitespace(self):
        parsed = parse_query("net  30")
        assert parsed.terms == ["net", "30"]
        assert parsed.is_phrase is False

    def test_quoted_phrase(self):
        parsed = parse_query('"net 30"')
        assert parsed.terms == ["net 30"]
        assert parsed.is_phrase is True

    def test_phrase_ignores_surrounding_words(self):
        assert parse_query('invoice "net 30" due').terms == ["net 30"]

    def test_empty_quotes_fall_back_to_terms(self):
        assert parse_query('"" net').terms == ['""', "net"]

    def test_blank_query_is_falsy(self):
        assert not parse_query("   ")

    def test_find_all_is_non_overlapping(self):
        assert find_all("aaaa", "aa") == [(0, 2), (2, 4)]

    def test_find_all_empty_needle(self):
        assert find_all("abc", "") == []

    def test_offsets_index_original_text_when_lowercasing_grows_it(self):
        text = "İstanbul net 30"
        assert find_all(text, "net") == [(9, 12)]
        assert first_match(text, parse_query("net")) == (9, 12)

    def test_case_insensitive_span_covers_original_characters(self):
        text = "Größe GRÖSSE größe"
        assert find_all(text, "größe") == [(0, 5), (13, 18)]

    def test_count_occurrences_case_insensitive(self):
        assert count_occurrences("Apple apple APPLE pie", parse_query("apple")) == 3

    def test_first_match_uses_query_order(self):
        # "banana" is tried first even though "apple" occurs earlier
        assert first_match("apple banana", parse_query("banana apple")) == (6, 12)

    def test_first_match_none(self):
        assert first_match("nothing here", parse_query("absent")) is None


class TestSnippets:

    def test_escape_html(self):
        assert escape_html("<a href=\"x\">'&'</a>") == \
            "&lt;a href=&quot;x&quot;&gt;&#39;&amp;&#39;&lt;/a&gt;"

    def test_snippet_escapes_context_and_highlights_match(self):
        text = "<script>alert('x')</script> net 30"
        start = text.index("net")
        snippet = build_snippet_html(text, start, start + 3)
        assert snippet == "&lt;script&gt;alert(&#39;x&#39;)&lt;/script&gt; <mark>net</mark> 30"

    def test_snippet_escapes_matched_text(self):
        text = "a <b> c"
        assert build_snippet_html(text, 2, 5) == "a <mark>&lt;b&gt;</mark> c"

    def test_snippet_ellipsis_on_both_sides(self):
        text = "a" * 100 + "needle" + "b" * 100
        snippet = build_snippet_html(text, 100, 106)
        assert snippet == "…" + "a" * 50 + "<mark>needle</mark>" + "b" * 50 + "…"

    def test_snippet_without_ellipsis_at_text_edges(self):
        assert build_snippet_html("needle in text", 0, 6, radius=100) == \
            "<mark>needle</mark> in text"

    def test_plain_snippet(self):
        text = "x" * 200 + "match" + "y" * 10
        snippet = build_plain_snippet(text, 200, 205, radius=90)
        assert snippet == "…" + "x" * 90 + "match" + "y" * 10


class TestOccurrenceSearcher:

    @pytest.fixture
    def fetcher(self):
        return FakeFetcher([candidate(INVOICE_TEXT)])

    def test_term_mode_returns_every_occurrence_in_position_order(self, fetcher):
        hits = OccurrenceSearcher(fetcher).search("net 30")
        assert [(h.match_start, h.match_end) for h in hits] == [(0, 3), (4, 6), (13, 16), (24, 26)]

    def test_phrase_mode_matches_whole_phrase(self, fetcher):
        hits = OccurrenceSearcher(fetcher).search('"net 30"')
        assert [(h.match_start, h.match_end) for h in hits] == [(0, 6)]
        assert hits[0].snippet_html.startswith("<mark>net 30</mark>")

    def test_pagination_after_sorting(self, fetcher):
        searcher = OccurrenceSearcher(fetcher)
        page = searcher.search("net 30", limit=1, offset=1)
        assert len(page) == 1
        assert page[0].match_start == 4

    def test_fetches_limit_plus_offset_rows(self, fetcher):
        OccurrenceSearcher(fetcher).search("net 30", limit=5, offset=3, document_id="doc-1")
        assert fetcher.calls == [(["net", "30"], "doc-1", 8)]

    def test_duplicate_terms_do_not_duplicate_hits(self, fetcher):
        hits = OccurrenceSearcher(fetcher).search("net NET")
        assert [h.match_start for h in hits] == [0, 13]

    def test_hit_offsets_index_original_text(self):
        text = "İstanbul net 30"
        hits = OccurrenceSearcher(FakeFetcher([candidate(text)])).search("net")

        assert [(h.match_start, h.match_end) for h in hits] == [(9, 12)]
        assert text[hits[0].match_start:hits[0].match_end] == "net"
        assert hits[0].snippet_html == "İstanbul <mark>net</mark> 30"

    def test_newest_document_first(self):
        fetcher = FakeFetcher([
            candidate("old net", document_id="old", age_minutes=10),
            candidate("net new", document_id="new", age_minutes=1),
        ])
        hits = OccurrenceSearcher(fetcher).search("net")
        assert [h.document_id for h in hits] == ["new", "old"]

    def test_documents_without_text_are_skipped(self):
        fetcher = FakeFetcher([candidate(""), candidate("net", document_id="doc-2")])
        hits = OccurrenceSearcher(fetcher).search("net")
        assert [h.document_id for h in hits] == ["doc-2"]

    def test_blank_query_returns_nothing(self, fetcher):
        assert OccurrenceSearcher(fetcher).search("  ") == []
        assert fetcher.calls == []

    def test_early_stop(self):
        fetcher = FakeFetcher([
            candidate("net net net", document_id="a", age_minutes=1),
            candidate("net", document_id="b", age_minutes=0),
        ])
        searcher = OccurrenceSearcher(fetcher, SearchConfig(early_stop=True))
        hits = searcher.search("net", limit=2)
        # Scanning stops inside the first candidate
        assert [h.document_id for h in hits] == ["a", "a"]

    def test_hit_to_dict(self, fetcher):
        hit = OccurrenceSearcher(fetcher).search('"net 30"')[0]
        assert hit.to_dict() == {
            "docId": "doc-1",
            "name": "doc.txt",
            "snippetHtml": hit.snippet_html,
            "startIndex": 0,
            "endIndex": 6,
        }

    @pytest.mark.parametrize("limit,expected", [(None, 25), (0, 25), (-5, 1), (10, 10), (1000, 500)])
    def test_limit_clamping(self, limit, expected):
        assert SearchConfig().clamp_limit(limit) == expected

    @pytest.mark.parametrize("offset,expected", [(None, 0), (-3, 0), (7, 7)])
    def test_offset_clamping(self, offset, expected):
        assert SearchConfig.clamp_offset(offset) == expected


class TestRankedSearcher:

    @pytest.fixture
    def candidates(self):
        return [
            RankedCandidate(document_id="a", name="report.txt", text="apple apple banana"),
            RankedCandidate(document_id="b", name="apple notes", text="one apple"),
            RankedCandidate(document_id="c", name="apple.pdf", text=None),
            RankedCandidate(document_id="d", name="other", text="pear"),
        ]

    def test_scores_and_order(self, candidates):
        ranked = RankedSearcher(FakeFetcher(candidates)).rank("apple")
        assert [(d.id, d.score) for d in ranked] == [("b", 3), ("a", 2), ("c", 2)]

    def test_zero_score_documents_dropped(self, candidates):
        ranked = RankedSearcher(FakeFetcher(candidates)).rank("apple")
        assert "d" not in [d.id for d in ranked]

    def test_name_only_document_uses_name_as_snippet(self, candidates):
        ranked = RankedSearcher(FakeFetcher(candidates)).rank("apple")
        by_id = {d.id: d for d in ranked}
        assert by_id["c"].snippet == "apple.pdf"
        assert by_id["a"].snippet == "apple apple banana"

    def test_k_limits_results(self, candidates):
        ranked = RankedSearcher(FakeFetcher(candidates)).rank("apple", k=1)
        assert [d.id for d in ranked] == ["b"]

    def test_candidate_rows_passed_to_fetcher(self, candidates):
        fetcher = FakeFetcher(candidates)
        RankedSearcher(fetcher, RankConfig(candidate_rows=7)).rank("apple banana")
        assert fetcher.calls == [(["apple", "banana"], 7)]

    @pytest.mark.parametrize("k,expected", [(None, 10), (0, 10), (-1, 1), (99, 50)])
    def test_k_clamping(self, k, expected):
        assert RankConfig().clamp_k(k) == expected

    def test_to_dict(self, candidates):
        document = RankedSearcher(FakeFetcher(candidates)).rank("apple", k=1)[0]
        assert document.to_dict() == {"id": "b", "name": "apple notes", "score": 3, "snippet": "one apple"}
