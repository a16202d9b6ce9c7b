"""
Test suite for TOC structural validation rules V001-V007
"""
import pytest

from chapterindex.models import TocEntry
from chapterindex.phases.toc_validator import TocValidator
from chapterindex.utils.errors import TocValidationError


def entry(title, page_no, level=1, children=None):
    return TocEntry(title=title, level=level, page_no=page_no, children=children or [])


def codes(result):
    return [issue.code for issue in result.issues]


def test_valid_tree():
    entries = [
        entry("Introduction", 1, children=[entry("Scope", 1, 2), entry("Terms", 3, 2)]),
        entry("Methods", 5),
    ]
    result = TocValidator(total_pages=100).validate(entries)
    assert result.valid
    assert result.error_count == 0


def test_page_order_decrease_v001():
    result = TocValidator().validate([entry("A", 10), entry("B", 4)])
    assert codes(result) == ["V001"]
    assert result.issues[0].path == "[1]"


def test_page_out_of_range_v002():
    result = TocValidator(total_pages=50).validate([entry("A", 0), entry("B", 60)])
    assert codes(result) == ["V002", "V002"]


def test_unbounded_total_pages_skips_upper_bound():
    result = TocValidator(total_pages=None).validate([entry("A", 1), entry("B", 5000)])
    assert result.valid


def test_empty_and_long_titles():
    result = TocValidator(max_title_length=10).validate([entry("   ", 1), entry("x" * 11, 2)])
    assert codes(result) == ["V003", "V004"]


def test_child_before_parent_v005():
    result = TocValidator().validate([entry("Part", 10, children=[entry("Section", 8, 2)])])
    # A child earlier than its parent also breaks the non-decreasing order
    assert codes(result) == ["V001", "V005"]
    assert result.issues[0].path == "[0].children[0]"


def test_duplicates_across_tree_v006():
    entries = [
        entry("Summary", 3, children=[entry("Details", 4, 2)]),
        entry("Details", 4),
    ]
    result = TocValidator().validate(entries)
    assert codes(result) == ["V006"]
    assert result.issues[0].path == "[1]"


def test_first_entry_too_late_v007():
    result = TocValidator(total_pages=100).validate([entry("Conclusion", 51)])
    assert codes(result) == ["V007"]

    result = TocValidator(total_pages=100).validate([entry("Conclusion", 50)])
    assert result.valid, "Exactly half the document is still acceptable"

    result = TocValidator(total_pages=None).validate([entry("Conclusion", 51)])
    assert result.valid, "V007 needs a known page count"


def test_validate_or_raise_carries_issues():
    with pytest.raises(TocValidationError) as exc_info:
        TocValidator().validate_or_raise([entry("A", 5), entry("A", 5)])

    error = exc_info.value
    assert [issue.code for issue in error.issues] == ["V006"]
    summary = error.get_summary()
    assert "[V006]" in summary
    assert "Path: [1]" in summary
