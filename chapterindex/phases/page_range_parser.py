"""
Page Range Parser - maps PDF page numbers to printed page numbers

Pages are grouped by physical size. Small groups are read in one vision
call; larger groups are sampled and a numbering pattern is inferred and
applied to every page of the group. The merged map is then repaired
(outliers, drops, negatives, backfill).
"""
import asyncio
import logging
import math
import os
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from ..core.completion import CompletionService, ModelBinding
from ..core.usage import TokenUsageAggregator
from ..models import DoclingDocument, DoclingPage, PageRange, UsageRecord
from ..utils.errors import PageRangeParseError
from ..utils.image_loader import image_content, load_image_data_url

logger = logging.getLogger("chapterindex.page_range_parser")

PageRangeMap = Dict[int, PageRange]


class PagePattern(str, Enum):
    SIMPLE_INCREMENT = "simple_increment"
    DOUBLE_SIDED = "double_sided"
    OFFSET = "offset"
    UNKNOWN = "unknown"


@dataclass
class PatternAnalysis:
    pattern: PagePattern
    offset: int = 0
    increment: int = 1


@dataclass
class SampleResult:
    pdf_page_no: int
    start_page_no: Optional[int]
    end_page_no: Optional[int]


@dataclass
class PageSizeGroup:
    size_key: str
    page_nos: List[int]


class PageNumberItem(BaseModel):
    image_index: int = Field(..., description="0-based index of the image in the request")
    start_page_no: Optional[int] = Field(None, description="Start page number (null if not found)")
    end_page_no: Optional[int] = Field(
        None, description="End page number for double-sided scans (null for single page)"
    )


class PageNumberResponse(BaseModel):
    pages: List[PageNumberItem] = Field(..., description="Extracted page numbers for each image")


SYSTEM_PROMPT = """You are a page number extraction specialist for document images.
You will receive multiple document page images. For EACH image, extract the visible page number(s).

## Page Layouts
1. SINGLE PAGE: One document page per image. Return start_page_no only, end_page_no must be null.
2. DOUBLE-SIDED: Two document pages per image (spread). Return start_page_no (left) and end_page_no (right).

## Where Page Numbers Are
- Bottom center, bottom corners (most common)
- Top corners (less common)
- Page numbers are SMALL numbers in MARGINS, NOT in the content area

## Ignore
- Roman numerals (i, ii, iii, iv, v...): return null
- Figure numbers: "Figure 5", "Fig. 5", "도 5", "그림 5"
- Table numbers: "Table 3", "표 3"
- Photo numbers: "Photo 8", "사진 8", "Plate 4", "도판 4"
- Years in content: "2015", "(1998)"
- Any number with a text prefix or inside the content area

## Response
For each image (in order) provide image_index (0-based), start_page_no
(null if not visible/readable) and end_page_no (right page of a spread, otherwise null)."""


def build_user_prompt(page_nos: List[int]) -> str:
    pages = ", ".join(str(p) for p in page_nos)
    return (
        f"I am providing {len(page_nos)} document page images.\n"
        f"These are PDF pages: {pages}.\n\n"
        "For each image (in order), extract the visible page number(s).\n"
        "Return null for pages where no page number is visible or readable.\n\n"
        "Remember: Look for SMALL numbers in MARGINS only. Ignore figure/table/photo numbers."
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _failed() -> PageRange:
    return PageRange(start_page_no=0, end_page_no=0)


def is_double_sided_range(page_range: PageRange) -> bool:
    return page_range.end_page_no == page_range.start_page_no + 1


def create_size_key(width: float, height: float, tolerance: float = 5.0) -> str:
    return f"{_round_half_up(width / tolerance)}x{_round_half_up(height / tolerance)}"


def detect_pattern(samples: List[SampleResult]) -> PatternAnalysis:
    """Infer the numbering pattern from at least two readable samples"""
    valid = sorted(
        (s for s in samples if s.start_page_no is not None),
        key=lambda s: s.pdf_page_no,
    )
    if len(valid) < 2:
        return PatternAnalysis(PagePattern.UNKNOWN)

    def simple_ok(i: int, s: SampleResult) -> bool:
        if s.end_page_no is not None and s.start_page_no != s.end_page_no:
            return False
        if i == 0:
            return True
        prev = valid[i - 1]
        return s.start_page_no == prev.start_page_no + (s.pdf_page_no - prev.pdf_page_no)

    if all(simple_ok(i, s) for i, s in enumerate(valid)):
        return PatternAnalysis(PagePattern.SIMPLE_INCREMENT, valid[0].start_page_no - valid[0].pdf_page_no, 1)

    def double_ok(i: int, s: SampleResult) -> bool:
        if s.end_page_no is None or s.end_page_no != s.start_page_no + 1:
            return False
        if i == 0:
            return True
        prev = valid[i - 1]
        return s.start_page_no - prev.start_page_no == (s.pdf_page_no - prev.pdf_page_no) * 2

    if all(double_ok(i, s) for i, s in enumerate(valid)):
        return PatternAnalysis(PagePattern.DOUBLE_SIDED, valid[0].start_page_no - valid[0].pdf_page_no * 2, 2)

    offsets = [s.start_page_no - s.pdf_page_no for s in valid]
    avg_offset = _round_half_up(sum(offsets) / len(offsets))
    if all(abs(o - avg_offset) <= 1 for o in offsets):
        return PatternAnalysis(PagePattern.OFFSET, avg_offset, 1)

    return PatternAnalysis(PagePattern.UNKNOWN)


def apply_pattern(page_nos: List[int], pattern: PatternAnalysis) -> PageRangeMap:
    result: PageRangeMap = {}
    for pdf_page_no in page_nos:
        if pattern.pattern in (PagePattern.SIMPLE_INCREMENT, PagePattern.OFFSET):
            page_no = pdf_page_no + pattern.offset
            result[pdf_page_no] = PageRange(start_page_no=page_no, end_page_no=page_no)
        elif pattern.pattern == PagePattern.DOUBLE_SIDED:
            start = pdf_page_no * 2 + pattern.offset
            result[pdf_page_no] = PageRange(start_page_no=start, end_page_no=start + 1)
        else:
            result[pdf_page_no] = _failed()
    return result


def samples_to_map(samples: List[SampleResult]) -> PageRangeMap:
    result: PageRangeMap = {}
    for sample in samples:
        if sample.start_page_no is None:
            result[sample.pdf_page_no] = _failed()
        else:
            end = sample.end_page_no if sample.end_page_no is not None else sample.start_page_no
            result[sample.pdf_page_no] = PageRange(start_page_no=sample.start_page_no, end_page_no=end)
    return result


# ----------------------------------------------------------------------
# Post-processing (order matters: outliers, drops, negatives, backfill)
# ----------------------------------------------------------------------

def post_process(page_range_map: PageRangeMap):
    detect_and_handle_outliers(page_range_map)
    detect_and_handle_drops(page_range_map)
    normalize_negatives(page_range_map)
    backfill_failed_pages(page_range_map)


def find_normal_sequence_start(page_range_map: PageRangeMap, pdf_pages: List[int],
                               min_length: int = 3) -> Optional[int]:
    """Index of the first run of min_length pages that advance as expected"""
    for start_idx in range(len(pdf_pages) - min_length + 1):
        is_valid = True
        for i in range(min_length - 1):
            curr_pdf = pdf_pages[start_idx + i]
            next_pdf = pdf_pages[start_idx + i + 1]
            curr = page_range_map[curr_pdf]
            nxt = page_range_map[next_pdf]
            if curr.start_page_no == 0 or nxt.start_page_no == 0:
                is_valid = False
                break
            per_pdf = 2 if is_double_sided_range(curr) else 1
            if nxt.start_page_no - curr.start_page_no != (next_pdf - curr_pdf) * per_pdf:
                is_valid = False
                break
        if is_valid:
            return start_idx
    return None


def detect_and_handle_outliers(page_range_map: PageRangeMap):
    """Leading pages numbered far above the first normal run are marked failed"""
    pdf_pages = sorted(page_range_map)
    if len(pdf_pages) < 3:
        return

    normal_start = find_normal_sequence_start(page_range_map, pdf_pages)
    if not normal_start:
        return

    normal_pdf = pdf_pages[normal_start]
    normal_range = page_range_map[normal_pdf]
    per_pdf = 2 if is_double_sided_range(normal_range) else 1

    for pdf_page in pdf_pages[:normal_start]:
        page_no = page_range_map[pdf_page].start_page_no
        if page_no == 0:
            continue
        expected = normal_range.start_page_no - (normal_pdf - pdf_page) * per_pdf
        if page_no > expected + 10:
            logger.info(f"[PageRangeParser] Outlier detected: PDF {pdf_page}={page_no} (expected ~{expected})")
            page_range_map[pdf_page] = _failed()


def detect_and_handle_drops(page_range_map: PageRangeMap):
    """A drop of more than 1 recalculates every earlier page from the drop point"""
    pdf_pages = sorted(page_range_map)

    for i in range(1, len(pdf_pages)):
        prev_pdf = pdf_pages[i - 1]
        curr_pdf = pdf_pages[i]
        prev_page_no = page_range_map[prev_pdf].start_page_no
        curr_page_no = page_range_map[curr_pdf].start_page_no

        if prev_page_no == 0 or curr_page_no == 0:
            continue
        if not (curr_page_no > 0 and prev_page_no - curr_page_no > 1):
            continue

        logger.info(f"[PageRangeParser] Page drop detected: PDF {prev_pdf}={prev_page_no} -> PDF {curr_pdf}={curr_page_no}")
        double_sided = is_double_sided_range(page_range_map[curr_pdf])

        for j in range(i - 1, -1, -1):
            pdf_page = pdf_pages[j]
            distance = curr_pdf - pdf_page
            if double_sided:
                start = curr_page_no - distance * 2
                page_range_map[pdf_page] = (
                    PageRange(start_page_no=start, end_page_no=start + 1) if start >= 1 else _failed()
                )
            else:
                start = curr_page_no - distance
                page_range_map[pdf_page] = (
                    PageRange(start_page_no=start, end_page_no=start) if start >= 1 else _failed()
                )


def normalize_negatives(page_range_map: PageRangeMap):
    for pdf_page, page_range in list(page_range_map.items()):
        if page_range.start_page_no < 0 or page_range.end_page_no < 0:
            page_range_map[pdf_page] = _failed()


def backfill_failed_pages(page_range_map: PageRangeMap):
    """Fill failed pages from the average offset of the successful ones"""
    pdf_pages = sorted(page_range_map)
    failed = [p for p in pdf_pages if page_range_map[p].start_page_no == 0]
    if not failed:
        return

    successful = [p for p in pdf_pages if page_range_map[p].start_page_no > 0]
    if len(successful) < 2:
        logger.warning("[PageRangeParser] Not enough successful pages for backfill")
        return

    double_sided_count = sum(1 for p in successful if is_double_sided_range(page_range_map[p]))
    double_sided = double_sided_count > len(successful) / 2
    per_pdf = 2 if double_sided else 1

    offsets = [page_range_map[p].start_page_no - p * per_pdf for p in successful]
    avg_offset = _round_half_up(sum(offsets) / len(offsets))
    logger.info(f"[PageRangeParser] Backfilling {len(failed)} pages (double_sided={double_sided}, offset={avg_offset})")

    for pdf_page in failed:
        start = pdf_page * per_pdf + avg_offset
        if start < 1:
            continue
        end = start + 1 if double_sided else start
        page_range_map[pdf_page] = PageRange(start_page_no=start, end_page_no=end)


class PageRangeParser:
    """
    Args:
        completion: CompletionService
        models: Vision model binding
        output_path: Directory that page image URIs are relative to
        rng: Random source for sampling
    """

    COMPONENT = "PageRangeParser"
    SAMPLE_SIZE = 3
    MAX_PATTERN_RETRIES = 6
    SIZE_TOLERANCE = 5.0

    def __init__(
        self,
        completion: CompletionService,
        models: ModelBinding,
        output_path: str,
        max_retries: int = 3,
        aggregator: Optional[TokenUsageAggregator] = None,
        rng: Optional[random.Random] = None,
    ):
        self.completion = completion
        self.models = models
        self.output_path = output_path
        self.max_retries = max_retries
        self.aggregator = aggregator or TokenUsageAggregator()
        self.rng = rng or random.Random()

    async def parse(self, doc: DoclingDocument) -> Tuple[PageRangeMap, List[UsageRecord]]:
        """
        Returns:
            (pdf page -> printed range, usage records)

        Raises:
            PageRangeParseError: a group never showed a pattern, or a vision call failed
        """
        logger.info(f"[{self.COMPONENT}] Starting page range parsing...")

        pages = self.extract_pages(doc)
        if not pages:
            logger.warning(f"[{self.COMPONENT}] No pages found")
            empty = UsageRecord(
                component=self.COMPONENT, phase="sampling", model="primary", model_name=self.models.primary
            )
            self.aggregator.track(empty)
            return {}, [empty]

        groups = self.analyze_sizes(pages)
        logger.info(f"[{self.COMPONENT}] Found {len(groups)} size group(s), total {len(pages)} pages")

        pages_by_no = {page.page_no: page for page in pages}
        group_results = await asyncio.gather(*(self._process_group(pages_by_no, group) for group in groups))

        page_range_map: PageRangeMap = {}
        usages: List[UsageRecord] = []
        for group_map, group_usages in group_results:
            page_range_map.update(group_map)
            usages.extend(group_usages)

        self.aggregator.track_many(usages)
        post_process(page_range_map)

        logger.info(f"[{self.COMPONENT}] Completed: {len(page_range_map)} pages mapped")
        return dict(sorted(page_range_map.items())), usages

    @staticmethod
    def extract_pages(doc: DoclingDocument) -> List[DoclingPage]:
        keys = sorted(int(k) for k in doc.pages if k.isdigit())
        return [doc.pages[str(k)] for k in keys]

    def analyze_sizes(self, pages: List[DoclingPage]) -> List[PageSizeGroup]:
        """Consecutive pages with the same rounded size form one group"""
        groups: List[PageSizeGroup] = []
        for page in pages:
            size_key = create_size_key(page.size.width, page.size.height, self.SIZE_TOLERANCE)
            if groups and groups[-1].size_key == size_key:
                groups[-1].page_nos.append(page.page_no)
            else:
                groups.append(PageSizeGroup(size_key=size_key, page_nos=[page.page_no]))
        return groups

    async def _process_group(self, pages: Dict[int, DoclingPage],
                             group: PageSizeGroup) -> Tuple[PageRangeMap, List[UsageRecord]]:
        page_nos = group.page_nos
        usages: List[UsageRecord] = []

        if len(page_nos) <= self.SAMPLE_SIZE:
            logger.info(f"[{self.COMPONENT}] Small group ({len(page_nos)} pages), extracting all at once")
            samples, usage = await self._extract_multiple_pages(pages, page_nos)
            usages.append(usage)
            return samples_to_map(samples), usages

        sampled: Set[int] = set()
        total_attempts = self.MAX_PATTERN_RETRIES + 1
        for attempt in range(total_attempts):
            sample_page_nos = self.select_random_samples(page_nos, self.SAMPLE_SIZE, sampled)
            sampled.update(sample_page_nos)
            logger.info(
                f"[{self.COMPONENT}] Attempt {attempt + 1}/{total_attempts}: "
                f"sampling pages {', '.join(str(p) for p in sample_page_nos)}"
            )

            samples, usage = await self._extract_multiple_pages(pages, sample_page_nos)
            usages.append(usage)

            pattern = detect_pattern(samples)
            if pattern.pattern != PagePattern.UNKNOWN:
                logger.info(
                    f"[{self.COMPONENT}] Pattern detected: {pattern.pattern.value} "
                    f"(offset={pattern.offset}, increment={pattern.increment})"
                )
                return apply_pattern(page_nos, pattern), usages

            logger.warning(f"[{self.COMPONENT}] Pattern detection failed, attempt {attempt + 1}/{total_attempts}")

        raise PageRangeParseError(
            f"Failed to detect page pattern after {total_attempts} attempts "
            f"for size group with {len(page_nos)} pages"
        )

    def select_random_samples(self, page_nos: List[int], count: int, exclude: Set[int]) -> List[int]:
        """Prefer pages not sampled yet; reuse pages once too few remain"""
        available = [p for p in page_nos if p not in exclude]
        pool = available if len(available) >= count else page_nos
        return sorted(self.rng.sample(pool, min(count, len(pool))))

    async def _extract_multiple_pages(self, pages: Dict[int, DoclingPage],
                                      page_nos: List[int]) -> Tuple[List[SampleResult], UsageRecord]:
        logger.info(f"[{self.COMPONENT}] Extracting {len(page_nos)} pages in single call")
        try:
            images = []
            for page_no in page_nos:
                page = pages[page_no]
                if page.image is None:
                    raise PageRangeParseError(f"Page {page_no} has no image")
                path = os.path.join(self.output_path, page.image.uri)
                data_url = await load_image_data_url(path, page.image.mimetype or "image/png")
                images.append(image_content(data_url))

            result = await self.completion.call_vision(
                PageNumberResponse,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": [{"type": "text", "text": build_user_prompt(page_nos)}, *images]},
                ],
                models=self.models,
                component=self.COMPONENT,
                phase="sampling",
                max_retries=self.max_retries,
                temperature=0.0,
            )
        except Exception as e:
            logger.error(f"[{self.COMPONENT}] Multi-image extraction failed: {e}")
            raise PageRangeParseError.from_error("Multi-image extraction failed", e)

        samples = [
            SampleResult(
                pdf_page_no=page_nos[item.image_index],
                start_page_no=item.start_page_no,
                end_page_no=item.end_page_no,
            )
            for item in result.output.pages
            if 0 <= item.image_index < len(page_nos)
        ]
        return samples, result.usage
