"""
Unit tests for token estimation and truncation.
"""

import math

import pytest

from auraiq.services.token_budget import estimate_tokens, truncate_content


class TestEstimateTokens:
    """estimate_tokens() is ceil(len / 4)."""

    @pytest.mark.parametrize("length", [0, 1, 3, 4, 5, 7, 8, 9, 1001])
    def test_matches_ceiling_of_quarter_length(self, length):
        """The estimate is the length divided by four, rounded up."""
        text = "x" * length
        assert estimate_tokens(text) == math.ceil(length / 4)

    def test_counts_characters_not_bytes(self):
        """Length is measured in characters."""
        # four multi-byte characters are still one token
        assert estimate_tokens("ééé€") == 1


class TestTruncateContent:
    """truncate_content() enforces the ceiling and marks cuts."""

    def test_text_within_budget_is_unchanged(self):
        """Short text comes back as-is."""
        result = truncate_content("hello world", 100)

        assert result.content == "hello world"
        assert result.was_truncated is False

    def test_text_exactly_at_budget_is_unchanged(self):
        """Text exactly at the budget is not cut."""
        text = "a" * 40
        result = truncate_content(text, 10)

        assert result.content == text
        assert result.was_truncated is False

    def test_oversized_text_is_cut_and_marked(self):
        """Long text is cut and ends with the truncation marker."""
        text = "a" * 10_000
        result = truncate_content(text, 1000)

        assert result.was_truncated is True
        assert "[... Content truncated due to size. Total size: ~2500 tokens]" in result.content
        assert result.content.startswith("a" * 100)

    def test_result_fits_within_budget(self):
        """The cut text, marker included, stays within the budget."""
        text = "b" * 50_000
        result = truncate_content(text, 2000)

        assert estimate_tokens(result.content) <= 2000

    def test_truncation_is_idempotent(self):
        """Truncating already truncated text changes nothing."""
        text = "lorem ipsum " * 5000
        once = truncate_content(text, 500).content
        twice = truncate_content(once, 500)

        assert twice.content == once
        assert twice.was_truncated is False

    def test_budget_too_small_for_marker_cuts_without_marker(self):
        """A budget smaller than the marker gets a plain cut."""
        result = truncate_content("z" * 100, 2)

        assert result.content == "z" * 8
        assert result.was_truncated is True
        assert truncate_content(result.content, 2).content == result.content
