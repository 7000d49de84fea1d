"""
Tests for PRD markdown parsing, title extraction and export.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ben_os.prd import (
    export_filename, export_prd_to_markdown, extract_title, is_markdown_filename,
    parse_markdown_to_sections,
)

SAMPLE = """# Checkout Redesign

Intro text that belongs to no section.

## Problem Statement
Users abandon carts.

## Goals
- Faster checkout
- Fewer steps
"""


class TestParseMarkdown:

    def test_splits_on_h2(self):
        sections = parse_markdown_to_sections(SAMPLE)
        assert [s["id"] for s in sections] == ["problem-statement", "goals"]
        assert sections[0]["title"] == "Problem Statement"
        assert sections[0]["content"] == "Users abandon carts."
        assert sections[1]["content"] == "- Faster checkout\n- Fewer steps"
        assert all(s["placeholder"] == "" for s in sections)

    def test_no_headings(self):
        assert parse_markdown_to_sections("just text\nmore text") == []

    def test_h3_stays_in_section(self):
        sections = parse_markdown_to_sections("## Scope\n### Detail\nbody")
        assert len(sections) == 1
        assert sections[0]["content"] == "### Detail\nbody"


class TestExtractTitle:

    def test_precedence(self):
        assert extract_title(SAMPLE, "file.md", "Explicit") == "Explicit"
        assert extract_title(SAMPLE, "file.md") == "Checkout Redesign"
        assert extract_title("no heading", "roadmap.markdown") == "roadmap"

    def test_markdown_filename(self):
        assert is_markdown_filename("Spec.MD")
        assert not is_markdown_filename("spec.txt")


class TestExport:

    def test_uses_content_when_present(self):
        prd = {
            "title": "Checkout",
            "status": "in_progress",
            "content": "Body text",
            "created_at": "2024-03-05T10:00:00.000Z",
            "updated_at": "2024-03-06T10:00:00.000Z",
        }
        markdown = export_prd_to_markdown(prd)
        assert markdown.startswith("# Checkout\n")
        assert "> **Status**: In Progress" in markdown
        assert "> **Created**: March 5, 2024" in markdown
        assert "> **Last Updated**: March 6, 2024" in markdown
        assert markdown.endswith("Body text")

    def test_falls_back_to_sections(self):
        prd = {
            "title": "Checkout",
            "status": "draft",
            "content": None,
            "sections": [{"title": "Goals", "content": ""}, {"title": "Scope", "content": "All"}],
        }
        markdown = export_prd_to_markdown(prd)
        assert "> **Status**: Draft" in markdown
        assert "## Goals\n\n*No content yet*" in markdown
        assert "## Scope\n\nAll" in markdown

    def test_filename(self):
        assert export_filename("Checkout Redesign v2!") == "checkout-redesign-v2.md"
        assert export_filename("???") == "prd.md"
