"""
Unit tests for filter_matching.py

Covers the exact/pattern predicate and the include/exclude set filters built
on top of it.
"""

import pytest
from filter_matching import (
    BASENAME,
    IDENTITY,
    InvalidFilterError,
    exclude_matching,
    include_matching,
    matches,
    partition_matching,
)

VALUES = {"a", "ab", "abc"}


class TestMatches:
    """Test the single-filter predicate."""

    @pytest.mark.parametrize(
        "key,filt,exact,expected",
        [
            ("abc", "abc", True, True),
            ("abc", "b", True, False),
            ("abc", "b", False, True),  # unanchored search
            ("abc", "^b", False, False),
            ("abc", "c$", False, True),
            ("abc", ".*b.*", True, False),  # pattern text is literal in exact mode
            ("a.c", "a.c", True, True),
            ("abc", "a.c", False, True),
            ("", ".*", False, True),
        ],
    )
    def test_matches(self, key, filt, exact, expected):
        assert matches(key, filt, exact) is expected

    def test_none_key_never_matches(self):
        assert not matches(None, ".*", exact=False)
        assert not matches(None, "", exact=True)

    def test_invalid_pattern_raises(self):
        with pytest.raises(InvalidFilterError, match="Invalid filter pattern"):
            matches("abc", "a(b", exact=False)

    def test_invalid_pattern_ignored_in_exact_mode(self):
        assert matches("a(b", "a(b", exact=True)


class TestIncludeMatching:
    @pytest.mark.parametrize(
        "filters,exact,expected",
        [
            (["a"], True, {"a"}),
            (["a"], False, {"a", "ab", "abc"}),
            (["b"], True, set()),
            (["b"], False, {"ab", "abc"}),
            (["a", "b"], True, {"a"}),
            (["a", "b"], False, {"a", "ab", "abc"}),
            (["a", "ab"], True, {"a", "ab"}),
            (["a", "ab"], False, {"a", "ab", "abc"}),
            ([".*b.*"], True, set()),
            ([".*b.*"], False, {"ab", "abc"}),
            ([".*"], True, set()),
            ([".*"], False, {"a", "ab", "abc"}),
        ],
    )
    def test_include_matching(self, filters, exact, expected):
        assert include_matching(VALUES, IDENTITY, filters, exact) == expected

    @pytest.mark.parametrize("exact", [True, False])
    def test_empty_filters_include_nothing(self, exact):
        assert include_matching(VALUES, IDENTITY, [], exact) == set()

    def test_projection_is_used(self):
        paths = {"/data/tumor.bam", "/data/normal.bam", "/tumor/normal.bam"}
        assert include_matching(paths, BASENAME, ["tumor"], exact=False) == {
            "/data/tumor.bam"
        }


class TestExcludeMatching:
    @pytest.mark.parametrize(
        "filters,exact,expected",
        [
            (["a"], True, {"ab", "abc"}),
            (["a"], False, set()),
            (["b"], True, {"a", "ab", "abc"}),
            (["b"], False, {"a"}),
            (["a", "b"], True, {"ab", "abc"}),
            (["a", "b"], False, set()),
            (["a", "ab"], True, {"abc"}),
            (["a", "ab"], False, set()),
            ([".*b.*"], True, {"a", "ab", "abc"}),
            ([".*b.*"], False, {"a"}),
            ([".*"], True, {"a", "ab", "abc"}),
            ([".*"], False, set()),
        ],
    )
    def test_exclude_matching(self, filters, exact, expected):
        assert exclude_matching(VALUES, IDENTITY, filters, exact) == expected

    @pytest.mark.parametrize("exact", [True, False])
    def test_empty_filters_exclude_nothing(self, exact):
        assert exclude_matching(VALUES, IDENTITY, [], exact) == VALUES

    @pytest.mark.parametrize("filters", [["a"], ["b"], [".*"], ["c", "^a$"]])
    @pytest.mark.parametrize("exact", [True, False])
    def test_include_and_exclude_partition_input(self, filters, exact):
        included = include_matching(VALUES, IDENTITY, filters, exact)
        excluded = exclude_matching(VALUES, IDENTITY, filters, exact)
        assert included | excluded == VALUES
        assert not included & excluded

    def test_non_injective_projection(self):
        # Two values share a key; both must land on the same side
        values = {"x/sample.bam", "y/sample.bam", "y/other.bam"}
        assert exclude_matching(values, BASENAME, ["sample"], exact=False) == {
            "y/other.bam"
        }

    def test_invalid_filter_fails_even_without_values(self):
        with pytest.raises(InvalidFilterError):
            exclude_matching(set(), IDENTITY, ["[unclosed"], exact=False)


class TestPartitionMatching:
    def test_preserves_order(self):
        values = ["c", "ab", "b", "a"]
        kept, rejected = partition_matching(values, IDENTITY, ["b"], exact=False)
        assert kept == ["ab", "b"]
        assert rejected == ["c", "a"]
