"""
Unit tests for the individual extraction strategies: hydration state,
JSON-LD, and DOM heuristics.
"""

import pytest

from harvester.errors import ExtractionError
from harvester.extraction.dom import DEFAULT_SELECTORS, extract_dom
from harvester.extraction.hydration import extract_hydration, find_payloads, is_event_like, walk
from harvester.extraction.page import Page
from harvester.extraction.structured import extract_structured
from harvester.extraction.technology import detect_technology
from harvester.extraction.types import Strategy
from tests.helpers import DOM_HTML, JSON_LD_HTML, NEXT_DATA_HTML

BASE = "https://venue.example/agenda"


# =============================================================================
# HYDRATION
# =============================================================================


class TestHydration:
    def test_next_data_candidates(self):
        cands = extract_hydration(Page(NEXT_DATA_HTML, BASE))

        assert [c.title for c in cands] == ["Jazz Night", "Silent Disco"]
        jazz = cands[0]
        assert jazz.venue == "Paradiso"
        assert jazz.date_text == "2024-10-12T20:00:00+02:00"
        assert jazz.detail_url == "https://venue.example/events/jazz-night"
        assert jazz.strategy == Strategy.HYDRATION

    def test_children_of_an_event_are_not_events(self):
        cands = extract_hydration(Page(NEXT_DATA_HTML, BASE))
        assert "Trio" not in [c.title for c in cands]

    def test_user_objects_are_excluded(self):
        assert is_event_like({"name": "Ann", "date": "2024-01-01", "username": "ann"}) is False
        assert is_event_like({"name": "Concert", "date": "2024-01-01"}) is True
        assert is_event_like({"name": "Concert"}) is False
        assert is_event_like({"date": "2024-01-01"}) is False

    def test_window_assignment_with_trailing_code(self):
        html = (
            "<script>window.__INITIAL_STATE__ = "
            '{"agenda": {"items": [{"eventName": "Market", "eventDate": "2024-12-01"}]}};'
            "initApp();</script>"
        )
        cands = extract_hydration(Page(html, BASE))
        assert [c.title for c in cands] == ["Market"]
        assert cands[0].date_text == "2024-12-01"

    def test_window_assignment_needing_repair(self):
        html = "<script>window.__NUXT__ = {items: [{'title': 'Lezing', 'date': '2024-05-01',},]};</script>"
        cands = extract_hydration(Page(html, BASE))
        assert [c.title for c in cands] == ["Lezing"]

    def test_depth_cap(self):
        deep = {"title": "Too Deep", "date": "2024-01-01"}
        for _ in range(10):
            deep = {"child": deep}

        assert walk(deep, BASE, max_depth=5) == []
        assert [c.title for c in walk(deep, BASE, max_depth=12)] == ["Too Deep"]

    def test_undecodable_blob_is_skipped(self):
        html = "<script id='__NEXT_DATA__'>{{{</script>"
        assert find_payloads(Page(html, BASE)) == []
        assert extract_hydration(Page(html, BASE)) == []


# =============================================================================
# STRUCTURED (JSON-LD)
# =============================================================================


class TestStructured:
    def test_graph_expansion_and_fields(self):
        cands = extract_structured(Page(JSON_LD_HTML, BASE))
        by_title = {c.title: c for c in cands}

        indie = by_title["Indie Showcase"]
        assert indie.venue == "Tivoli"
        assert indie.image_url == "https://venue.example/img/indie.jpg"
        assert indie.category_hint == "music"
        assert indie.strategy == Strategy.STRUCTURED

        hamlet = by_title["Hamlet"]
        assert hamlet.venue == "Stadsschouwburg"
        assert hamlet.detail_url == "https://venue.example/e/hamlet"
        assert hamlet.category_hint == "entertainment"

    def test_top_level_list_and_address_fallback(self):
        html = """<script type="application/ld+json">
        [{"@type": "http://schema.org/Event", "name": "Street Fair",
          "eventSchedule": {"startDate": "2024-06-01"},
          "location": {"@type": "Place", "address": {"streetAddress": "Dam 1",
                                                     "addressLocality": "Amsterdam"}}},
         {"@type": "Organization", "name": "Not An Event"}]
        </script>"""
        cands = extract_structured(Page(html, BASE))

        assert len(cands) == 1
        assert cands[0].title == "Street Fair"
        assert cands[0].date_text == "2024-06-01"
        assert cands[0].venue == "Dam 1, Amsterdam"

    def test_trailing_comma_is_repaired(self):
        html = '<script type="application/ld+json">{"@type": "Event", "name": "Quiz", "startDate": "2024-02-02",}</script>'
        assert [c.title for c in extract_structured(Page(html, BASE))] == ["Quiz"]

    def test_all_blocks_malformed_raises(self):
        html = '<script type="application/ld+json">{"@type": "Event", "name": </script>'
        with pytest.raises(ExtractionError):
            extract_structured(Page(html, BASE))

    def test_one_good_block_is_enough(self):
        html = (
            '<script type="application/ld+json">{broken</script>'
            '<script type="application/ld+json">{"@type": "Event", "name": "Good", "startDate": "2024-02-02"}</script>'
        )
        assert [c.title for c in extract_structured(Page(html, BASE))] == ["Good"]


# =============================================================================
# DOM
# =============================================================================


class TestDom:
    def test_generic_selectors(self):
        cands = extract_dom(Page(DOM_HTML, BASE))

        cinema = cands[0]
        assert cinema.title == "Open Air Cinema"
        assert cinema.date_text == "za 12 okt 2024 20:00"
        assert cinema.venue == "Westerpark"
        assert cinema.detail_url == "https://venue.example/agenda/open-air-cinema"
        assert cinema.image_url == "https://venue.example/img/cinema.jpg"
        assert cinema.strategy == Strategy.DOM

    def test_short_titles_are_rejected(self):
        titles = [c.title for c in extract_dom(Page(DOM_HTML, BASE))]
        assert "Hi" not in titles

    def test_custom_selector_runs_first(self):
        html = """
        <div class="programma-blok"><h4>Orgelconcert</h4><p>Zondag 3 mrt</p></div>
        <li class="event"><h3>Generic Event</h3></li>
        """
        cands = extract_dom(Page(html, BASE), selectors=[".programma-blok"])
        assert [c.title for c in cands] == ["Orgelconcert"]

    def test_date_regex_fallback(self):
        html = '<div class="agenda-item"><a href="/x"><h2>Rommelmarkt</h2></a><div>Op 14 mei in de tuin</div></div>'
        cands = extract_dom(Page(html, BASE))
        assert cands[0].date_text == "14 mei"

    def test_nested_matches_are_collapsed(self):
        html = """
        <div class="event-card"><h3>Outer Event</h3>
          <div class="event-card"><span>inner</span></div>
        </div>
        """
        assert [c.title for c in extract_dom(Page(html, BASE))] == ["Outer Event"]

    def test_no_matches(self):
        assert extract_dom(Page("<p>plain</p>", BASE)) == []

    def test_default_selectors_start_with_specific_ones(self):
        assert DEFAULT_SELECTORS[0] == "article.event"
        assert DEFAULT_SELECTORS[-1] == "[class*='agenda']"


@pytest.mark.parametrize(
    "html,expected",
    [
        (NEXT_DATA_HTML, "next.js"),
        ('<link href="/wp-content/themes/x/style.css">', "wordpress"),
        ("<script>window.__NUXT__={}</script>", "nuxt"),
        ("<p>hand written</p>", "unknown"),
    ],
)
def test_detect_technology(html, expected):
    assert detect_technology(html) == expected
