"""
Test suite for printed page number mapping
"""
import asyncio
import random
import re

import pytest

from chapterindex.models import PageRange
from chapterindex.phases.page_range_parser import (
    PagePattern,
    PageRangeParser,
    SampleResult,
    apply_pattern,
    create_size_key,
    detect_pattern,
    post_process,
)
from chapterindex.utils.errors import PageRangeParseError

from fakes import make_document, page, write_page_images

COMPONENT = PageRangeParser.COMPONENT


def sample(pdf, start, end=None):
    return SampleResult(pdf_page_no=pdf, start_page_no=start, end_page_no=end)


def pr(start, end=None):
    return PageRange(start_page_no=start, end_page_no=start if end is None else end)


def starts(page_range_map):
    return {pdf: r.start_page_no for pdf, r in page_range_map.items()}


def printed_pages(offset=None, unreadable=()):
    """Reply that reads the requested PDF pages from the prompt"""
    def reply(kwargs):
        text = kwargs["messages"][1]["content"][0]["text"]
        pdf_pages = [int(p) for p in re.search(r"PDF pages: ([\d, ]+)\.", text).group(1).split(", ")]
        return {"pages": [
            {
                "image_index": i,
                "start_page_no": None if offset is None or pdf in unreadable else pdf + offset,
                "end_page_no": None,
            }
            for i, pdf in enumerate(pdf_pages)
        ]}
    return reply


def test_detect_simple_increment():
    analysis = detect_pattern([sample(3, 1), sample(5, 3), sample(8, 6)])
    assert analysis.pattern == PagePattern.SIMPLE_INCREMENT
    assert analysis.offset == -2


def test_detect_double_sided():
    analysis = detect_pattern([sample(2, 2, 3), sample(4, 6, 7), sample(5, 8, 9)])
    assert analysis.pattern == PagePattern.DOUBLE_SIDED
    assert analysis.offset == -2
    assert apply_pattern([3], analysis)[3] == pr(4, 5)


def test_detect_offset_tolerates_small_jitter():
    analysis = detect_pattern([sample(1, 10), sample(2, 12), sample(5, 14)])
    assert analysis.pattern == PagePattern.OFFSET
    assert analysis.offset == 9


def test_detect_unknown():
    assert detect_pattern([sample(1, 5), sample(2, None)]).pattern == PagePattern.UNKNOWN
    assert detect_pattern([sample(1, 5), sample(2, 40), sample(3, 7)]).pattern == PagePattern.UNKNOWN


def test_apply_unknown_marks_failed():
    result = apply_pattern([1, 2], detect_pattern([]))
    assert starts(result) == {1: 0, 2: 0}


def test_size_key_tolerance():
    assert create_size_key(595, 842) == create_size_key(597, 841)
    assert create_size_key(595, 842) == "119x168"
    # 843 / 5 rounds up into the next bucket
    assert create_size_key(595, 843) == "119x169"
    assert create_size_key(595, 842) != create_size_key(1190, 842)


def test_post_process_leading_outlier():
    page_range_map = {1: pr(500), 2: pr(2), 3: pr(3), 4: pr(4)}
    post_process(page_range_map)
    assert starts(page_range_map) == {1: 1, 2: 2, 3: 3, 4: 4}


def test_post_process_drop_recalculates_earlier_pages():
    page_range_map = {1: pr(10), 2: pr(11), 3: pr(3), 4: pr(4)}
    post_process(page_range_map)
    assert starts(page_range_map) == {1: 1, 2: 2, 3: 3, 4: 4}
    print("[PASS] Pages before a drop recalculated backwards")


def test_post_process_negative_and_backfill():
    page_range_map = {1: pr(-1), 2: pr(0), 3: pr(3), 4: pr(4)}
    post_process(page_range_map)
    assert starts(page_range_map) == {1: 1, 2: 2, 3: 3, 4: 4}


def test_backfill_needs_two_successful_pages():
    page_range_map = {1: pr(0), 2: pr(5)}
    post_process(page_range_map)
    assert starts(page_range_map) == {1: 0, 2: 5}


def test_backfill_double_sided():
    page_range_map = {1: pr(0), 2: pr(4, 5), 3: pr(6, 7)}
    post_process(page_range_map)
    assert page_range_map[1] == pr(2, 3)


def make_parser(completion, models, tmp_path, pages):
    write_page_images(tmp_path, pages)
    return PageRangeParser(completion, models, str(tmp_path), rng=random.Random(7))


def test_parse_empty_document(completion, models, aggregator, tmp_path):
    parser = PageRangeParser(completion, models, str(tmp_path), aggregator=aggregator)
    page_range_map, usages = asyncio.run(parser.parse(make_document()))

    assert page_range_map == {}
    assert len(usages) == 1 and usages[0].total_tokens == 0
    assert aggregator.get_report()["components"][0]["component"] == COMPONENT
    assert completion.calls == []


def test_parse_small_group_reads_every_page(completion, models, tmp_path):
    completion.script(COMPONENT, printed_pages(offset=4, unreadable={3}))
    parser = make_parser(completion, models, tmp_path, 3)

    page_range_map, usages = asyncio.run(parser.parse(make_document(page_count=3)))

    assert starts(page_range_map) == {1: 5, 2: 6, 3: 7}, "Unreadable page is backfilled"
    assert len(completion.calls) == 1
    call = completion.calls[0]
    assert call.phase == "sampling"
    assert sum(1 for part in call.kwargs["messages"][1]["content"] if part["type"] == "image_url") == 3
    assert len(usages) == 1


def test_parse_large_group_samples_and_applies_pattern(completion, models, tmp_path):
    completion.script(COMPONENT, printed_pages(offset=-2))
    parser = make_parser(completion, models, tmp_path, 10)

    page_range_map, _ = asyncio.run(parser.parse(make_document(page_count=10)))

    assert len(completion.calls) == 1
    assert list(page_range_map) == list(range(1, 11))
    assert page_range_map[3] == pr(1)
    assert page_range_map[10] == pr(8)
    # Pages before printed page 1 come out negative and are then left failed
    assert page_range_map[1].start_page_no == 0


def test_parse_size_groups_independently(completion, models, tmp_path):
    completion.script(COMPONENT, printed_pages(offset=0), printed_pages(offset=0))
    pages = [page(1, 1190, 842), page(2, 1190, 842)] + [page(n) for n in range(3, 9)]
    parser = make_parser(completion, models, tmp_path, 8)

    groups = parser.analyze_sizes(PageRangeParser.extract_pages(make_document(pages=pages)))
    assert [g.page_nos for g in groups] == [[1, 2], [3, 4, 5, 6, 7, 8]]

    page_range_map, usages = asyncio.run(parser.parse(make_document(pages=pages)))
    assert starts(page_range_map) == {n: n for n in range(1, 9)}
    assert len(usages) == 2


def test_parse_gives_up_without_pattern(completion, models, tmp_path):
    total_attempts = PageRangeParser.MAX_PATTERN_RETRIES + 1
    completion.script(COMPONENT, *([printed_pages(offset=None)] * total_attempts))
    parser = make_parser(completion, models, tmp_path, 10)

    with pytest.raises(PageRangeParseError, match="Failed to detect page pattern"):
        asyncio.run(parser.parse(make_document(page_count=10)))
    assert len(completion.calls) == total_attempts


def test_vision_failure_is_wrapped(completion, models, tmp_path):
    completion.script(COMPONENT, RuntimeError("vision down"))
    parser = make_parser(completion, models, tmp_path, 2)

    with pytest.raises(PageRangeParseError, match="Multi-image extraction failed: vision down"):
        asyncio.run(parser.parse(make_document(page_count=2)))


def test_select_random_samples_prefers_unsampled(completion, models, tmp_path):
    parser = PageRangeParser(completion, models, str(tmp_path), rng=random.Random(1))
    picked = parser.select_random_samples([1, 2, 3, 4, 5], 3, exclude={1, 2})
    assert picked == [3, 4, 5]

    picked = parser.select_random_samples([1, 2, 3, 4], 3, exclude={1, 2, 3})
    assert len(picked) == 3 and picked == sorted(picked)
