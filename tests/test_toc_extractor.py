"""
Test suite for structured TOC extraction and the validation feedback loop
"""
import asyncio

import pytest

from chapterindex.phases.toc_extractor import (
    MAX_VALIDATION_RETRIES,
    RawTocEntry,
    TocExtractor,
    normalize_entries,
)
from chapterindex.utils.errors import TocParseError, TocValidationError

MARKDOWN = "- 제1장 서론 ..... 1\n  - 1. 연구 배경 ..... 3\n- 제2장 방법론 ..... 10"

VALID = {
    "entries": [
        {
            "title": " 제1장 서론 ",
            "level": 3,
            "page_no": 1,
            "children": [{"title": "1. 연구 배경", "level": 1, "page_no": 3, "children": []}],
        },
        {"title": "제2장 방법론", "level": 1, "page_no": 10, "children": []},
    ]
}

# Page order decreases between siblings (V001)
INVALID = {
    "entries": [
        {"title": "제1장 서론", "level": 1, "page_no": 10, "children": []},
        {"title": "제2장 방법론", "level": 1, "page_no": 1, "children": []},
    ]
}

COMPONENT = TocExtractor.COMPONENT


def test_normalize_entries_forces_depth_levels():
    raw = [RawTocEntry.model_validate(e) for e in VALID["entries"]]
    entries = normalize_entries(raw)

    assert entries[0].title == "제1장 서론"
    assert entries[0].level == 1
    assert entries[0].children[0].level == 2


def test_accepts_valid_first_attempt(completion, models):
    completion.script(COMPONENT, VALID)

    result = asyncio.run(TocExtractor(completion, models).extract(MARKDOWN, total_pages=100))

    assert [e.title for e in result.entries] == ["제1장 서론", "제2장 방법론"]
    assert len(result.usages) == 1
    assert completion.calls[0].phase == "extraction"
    assert MARKDOWN in completion.calls[0].prompt


def test_correction_attempt_embeds_previous_output(completion, models):
    completion.script(COMPONENT, INVALID, VALID)

    result = asyncio.run(TocExtractor(completion, models).extract(MARKDOWN))

    assert [c.phase for c in completion.calls] == ["extraction", "correction-1"]
    correction_prompt = completion.calls[1].prompt
    assert "[V001]" in correction_prompt
    assert "## Your Previous Extraction (with errors)" in correction_prompt
    assert '"page_no": 10' in correction_prompt
    assert len(result.usages) == 2
    print("[PASS] Correction prompt carries issues and previous entries")


def test_exhausted_raises_with_last_issues(completion, models):
    completion.script(COMPONENT, *([INVALID] * (MAX_VALIDATION_RETRIES + 1)))

    with pytest.raises(TocValidationError) as exc_info:
        asyncio.run(TocExtractor(completion, models).extract(MARKDOWN))

    assert [c.phase for c in completion.calls] == [
        "extraction", "correction-1", "correction-2", "correction-3",
    ]
    assert [issue.code for issue in exc_info.value.issues] == ["V001"]


def test_total_pages_bounds_validation(completion, models):
    """Entries beyond total_pages trigger a correction round"""
    out_of_range = {"entries": [{"title": "부록", "level": 1, "page_no": 500, "children": []}]}
    completion.script(COMPONENT, out_of_range, VALID)

    result = asyncio.run(TocExtractor(completion, models).extract(MARKDOWN, total_pages=100))

    assert "[V002]" in completion.calls[1].prompt
    assert result.entries[0].page_no == 1


def test_skip_validation_accepts_anything(completion, models):
    completion.script(COMPONENT, INVALID)

    result = asyncio.run(TocExtractor(completion, models, skip_validation=True).extract(MARKDOWN))

    assert len(completion.calls) == 1
    assert result.entries[0].page_no == 10


def test_empty_entries_are_accepted(completion, models):
    completion.script(COMPONENT, {"entries": []})
    result = asyncio.run(TocExtractor(completion, models).extract(MARKDOWN))
    assert result.entries == []


def test_empty_markdown_raises_parse_error(completion, models):
    with pytest.raises(TocParseError, match="provided markdown content is empty"):
        asyncio.run(TocExtractor(completion, models).extract("  \n "))
    assert completion.calls == []


def test_completion_failure_is_wrapped(completion, models):
    completion.script(COMPONENT, RuntimeError("rate limited"))

    with pytest.raises(TocParseError, match="Failed to extract TOC structure: rate limited") as exc_info:
        asyncio.run(TocExtractor(completion, models).extract(MARKDOWN))
    assert isinstance(exc_info.value.__cause__, RuntimeError)
