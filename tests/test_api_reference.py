"""Tests for the API reference loader and section lookup."""

from __future__ import annotations

from resource_agent.api_reference import (
    _split_into_sections,
    find_sections,
    format_sections,
    get_api_reference,
)


class TestReference:
    def test_reference_is_loaded(self):
        text = get_api_reference()
        assert "/api/v2" in text
        assert "is_not_null" in text

    def test_split_into_sections(self):
        content = "# Title\n\n## Group\n\n### First\nalpha\n\n### Second\nbeta\n---\n## Next\n"
        sections = _split_into_sections(content)
        assert sections == [
            {"heading": "First", "body": "alpha"},
            {"heading": "Second", "body": "beta"},
        ]


class TestFindSections:
    def test_search_query_finds_search_section(self):
        headings = [s["heading"] for s in find_sections("search endpoint filters")]
        assert "Search endpoint" in headings

    def test_soft_delete_query(self):
        assert find_sections("restore trashed soft deletes")[0]["heading"] == "Soft deletes"

    def test_limit(self):
        assert len(find_sections("list show search include", limit=1)) == 1

    def test_short_or_empty_query(self):
        assert find_sections("") == []
        assert find_sections("a b") == []

    def test_format_sections(self):
        text = format_sections([{"heading": "H", "body": "B"}])
        assert text == "**H**\nB"
