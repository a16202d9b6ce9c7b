"""
Test suite for image-based TOC extraction
"""
import asyncio

from chapterindex.phases.vision_toc_extractor import VisionTocExtractor

from fakes import write_page_images

COMPONENT = VisionTocExtractor.COMPONENT


def found(markdown, continues=False):
    return {"has_toc": True, "toc_markdown": markdown, "continues_on_next_page": continues}


NOT_FOUND = {"has_toc": False, "toc_markdown": None, "continues_on_next_page": False}


def image_count(call):
    return sum(1 for part in call.kwargs["messages"][0]["content"] if part["type"] == "image_url")


def make_extractor(completion, models, tmp_path, pages, **kwargs):
    write_page_images(tmp_path, pages)
    return VisionTocExtractor(completion, models, str(tmp_path), **kwargs)


def test_no_pages_returns_none(completion, models, tmp_path):
    extractor = VisionTocExtractor(completion, models, str(tmp_path))
    assert asyncio.run(extractor.extract(0)) is None
    assert completion.calls == []


def test_first_batch_hit(completion, models, tmp_path):
    completion.script(COMPONENT, found("- 서론 ..... 1"))
    extractor = make_extractor(completion, models, tmp_path, 4)

    assert asyncio.run(extractor.extract(4)) == "- 서론 ..... 1"
    call = completion.calls[0]
    assert image_count(call) == 4, "Batch is clamped to the page count"
    assert "pages 1-4" in call.prompt
    assert call.kwargs["messages"][0]["content"][1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_continuation_is_merged(completion, models, tmp_path):
    completion.script(
        COMPONENT,
        found("- 제1장 ..... 1\n", continues=True),
        found("  - 1.1 ..... 3\n- 제2장 ..... 9"),
    )
    extractor = make_extractor(completion, models, tmp_path, 6, first_batch_size=3, second_batch_size=2)

    markdown = asyncio.run(extractor.extract(6))

    assert markdown == "- 제1장 ..... 1\n- 1.1 ..... 3\n- 제2장 ..... 9"
    assert "pages 4-5" in completion.calls[1].prompt
    print("[PASS] Continuation batch merged")


def test_continuation_failure_keeps_first_batch(completion, models, tmp_path):
    completion.script(COMPONENT, found("- 제1장 ..... 1", continues=True), RuntimeError("timeout"))
    extractor = make_extractor(completion, models, tmp_path, 6, first_batch_size=3)

    assert asyncio.run(extractor.extract(6)) == "- 제1장 ..... 1"


def test_continuation_flag_ignored_on_last_page(completion, models, tmp_path):
    completion.script(COMPONENT, found("- 제1장 ..... 1", continues=True))
    extractor = make_extractor(completion, models, tmp_path, 3, first_batch_size=3)

    assert asyncio.run(extractor.extract(3)) == "- 제1장 ..... 1"
    assert len(completion.calls) == 1


def test_second_batch_search(completion, models, tmp_path):
    completion.script(COMPONENT, NOT_FOUND, found("- Contents ..... 12"))
    extractor = make_extractor(completion, models, tmp_path, 25, first_batch_size=10, second_batch_size=10)

    assert asyncio.run(extractor.extract(25)) == "- Contents ..... 12"
    assert "pages 11-20" in completion.calls[1].prompt
    assert image_count(completion.calls[1]) == 10


def test_not_found_anywhere(completion, models, tmp_path):
    completion.script(COMPONENT, NOT_FOUND, NOT_FOUND)
    extractor = make_extractor(completion, models, tmp_path, 12)

    assert asyncio.run(extractor.extract(12)) is None
    assert len(completion.calls) == 2
