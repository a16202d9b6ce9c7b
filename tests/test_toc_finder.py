"""
Test suite for TOC area discovery
"""
import pytest

from chapterindex.phases.toc_finder import TocFinder
from chapterindex.utils.errors import TocNotFoundError
from chapterindex.utils.ref_resolver import RefResolver

from fakes import group_item, make_document, table_item, text_item


def finder_for(doc, **kwargs):
    return TocFinder(RefResolver(doc), **kwargs)


def test_keyword_search_walks_to_group_and_expands_forward():
    doc = make_document(
        texts=[
            text_item(0, "목차", page_no=2, parent="#/groups/0"),
            text_item(1, "제1장 서론 ..... 1", page_no=2, parent="#/groups/0"),
            text_item(2, "제2장 방법 ..... 5", page_no=2, parent="#/groups/0"),
            text_item(3, "제3장 결과 ..... 9", page_no=3, parent="#/groups/1"),
            text_item(4, "제4장 결론 ..... 12", page_no=3, parent="#/groups/1"),
            text_item(5, "부록 ..... 15", page_no=3, parent="#/groups/1"),
            text_item(6, "본문 시작", page_no=4),
        ],
        groups=[
            group_item(0, ["#/texts/0", "#/texts/1", "#/texts/2"]),
            group_item(1, ["#/texts/3", "#/texts/4", "#/texts/5"]),
        ],
    )

    result = finder_for(doc).find(doc)

    assert result.item_refs == ["#/groups/0", "#/groups/1"]
    assert (result.start_page, result.end_page) == (2, 3)
    print("[PASS] Keyword hit expanded to the following TOC page")


def test_keyword_without_parent_returns_text_itself():
    doc = make_document(texts=[text_item(0, "Table of Contents", page_no=1)])
    result = finder_for(doc).find(doc)
    assert result.item_refs == ["#/texts/0"]
    assert result.start_page == result.end_page == 1


def test_additional_keywords():
    doc = make_document(texts=[text_item(0, "Sommaire", page_no=1)])
    with pytest.raises(TocNotFoundError):
        finder_for(doc).find(doc)

    result = finder_for(doc, additional_keywords=["Sommaire"]).find(doc)
    assert result.item_refs == ["#/texts/0"]


def test_keyword_beyond_search_window_is_ignored():
    doc = make_document(texts=[text_item(0, "목차", page_no=12)])
    with pytest.raises(TocNotFoundError):
        finder_for(doc, max_search_pages=10).find(doc)


def test_structure_search_prefers_higher_score():
    """An early page-numbered list outranks a late numeric table"""
    doc = make_document(
        texts=[
            text_item(0, "Introduction 1", page_no=2, parent="#/groups/0"),
            text_item(1, "Background 4", page_no=2, parent="#/groups/0"),
            text_item(2, "Results 9", page_no=2, parent="#/groups/0"),
        ],
        groups=[group_item(0, ["#/texts/0", "#/texts/1", "#/texts/2"])],
        tables=[table_item(0, [["Name", "Page"], ["A", "3"], ["B", "7"]], page_no=6)],
    )

    result = finder_for(doc).find(doc)

    assert result.item_refs == ["#/groups/0"]
    assert result.start_page == 2


def test_document_index_table_found_by_structure():
    doc = make_document(
        tables=[table_item(0, [["Overview", "iii"]], page_no=3, label="document_index")],
    )
    result = finder_for(doc).find(doc)
    assert result.item_refs == ["#/tables/0"]
    assert (result.start_page, result.end_page) == (3, 3)


def test_continuation_marker_pulls_in_parent_group():
    doc = make_document(
        texts=[
            text_item(0, "CONTENTS", page_no=1, parent="#/groups/0"),
            text_item(1, "Preface", page_no=1, parent="#/groups/0"),
            text_item(2, "(continued)", page_no=2, parent="#/groups/1"),
            text_item(3, "Appendix", page_no=2, parent="#/groups/1"),
        ],
        groups=[
            group_item(0, ["#/texts/0", "#/texts/1"]),
            group_item(1, ["#/texts/2", "#/texts/3"]),
        ],
    )

    result = finder_for(doc).find(doc)

    assert result.item_refs == ["#/groups/0", "#/groups/1"]
    assert result.end_page == 2


def test_table_toc_like_rules():
    numeric = make_document(tables=[table_item(0, [["Title", "Page"], ["A", "1"], ["B", "x"], ["C", "8"]])])
    assert TocFinder.is_table_toc_like(numeric.tables[0])

    mostly_text = make_document(tables=[table_item(0, [["Title", "Page"], ["A", "one"], ["B", "two"]])])
    assert not TocFinder.is_table_toc_like(mostly_text.tables[0])

    too_small = make_document(tables=[table_item(0, [["A", "1"], ["B", "2"]])])
    assert not TocFinder.is_table_toc_like(too_small.tables[0])
