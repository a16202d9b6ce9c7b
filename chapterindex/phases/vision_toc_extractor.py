"""
Vision TOC Extractor - finds the TOC directly on page images when the
rule-based path fails or is rejected
"""
import logging
from typing import Optional

from pydantic import BaseModel, Field

from ..core.completion import CompletionService, ModelBinding
from ..core.usage import TokenUsageAggregator
from ..utils.image_loader import load_page_images

logger = logging.getLogger("chapterindex.vision_toc_extractor")


class VisionTocResponse(BaseModel):
    has_toc: bool = Field(..., description="Whether a main document TOC is visible")
    toc_markdown: Optional[str] = Field(None, description="TOC as markdown list, null when not found")
    continues_on_next_page: bool = Field(False, description="TOC continues beyond the last page shown")


def build_user_prompt(start_page: int, end_page: int) -> str:
    page_count = end_page - start_page + 1
    return f"""You are a document analysis specialist. Find and extract the Table of Contents (TOC) from document page images.

I am providing {page_count} document page images (pages {start_page}-{end_page}).

## Identifying TOC Pages
- A TOC usually appears in the first 10-20 pages
- Look for a heading such as "목차", "차례", "目次", "目录", "Contents", "Table of Contents"
- Below the heading: chapter/section titles with page numbers, often joined by dot leaders

## Main TOC vs Supplementary Indices
- Main TOC (EXTRACT): heading is the unqualified "목차" / "目次" / "Contents"
- Supplementary index (DO NOT EXTRACT): heading has a resource qualifier, e.g.
  "사진 목차", "寫眞 目次", "圖面 目次", "表 目次", "List of Figures", "List of Tables"

## Output Format
Markdown list:
- "- " prefix per entry, 2-space indentation per hierarchy level
- " ..... " followed by the page number at the end of each entry
- Preserve original numbering and the original language of titles

Example:
```
- Chapter 1 Introduction ..... 1
  - 1. Background ..... 3
  - 2. Purpose ..... 5
- Chapter 2 Methods ..... 10
```

## Rules
1. Extract ONLY the main document TOC
2. Page numbers may be large (compiled volumes start at 175, 500, ...); keep them as printed
3. Skip photographs, blank pages and other pages without a TOC
4. If no TOC is found, set has_toc to false and toc_markdown to null
5. Set continues_on_next_page to true if the TOC appears to continue beyond the last page shown"""


class VisionTocExtractor:
    """
    Searches page images in two batches

    Args:
        completion: CompletionService
        models: Vision-capable model binding
        output_path: Directory containing pages/page_{n}.png
        first_batch_size: Pages inspected first (1..first_batch_size)
        second_batch_size: Pages of the continuation / second search batch
    """

    COMPONENT = "VisionTocExtractor"

    def __init__(
        self,
        completion: CompletionService,
        models: ModelBinding,
        output_path: str,
        first_batch_size: int = 10,
        second_batch_size: int = 10,
        max_retries: int = 3,
        aggregator: Optional[TokenUsageAggregator] = None,
    ):
        self.completion = completion
        self.models = models
        self.output_path = output_path
        self.first_batch_size = first_batch_size
        self.second_batch_size = second_batch_size
        self.max_retries = max_retries
        self.aggregator = aggregator or TokenUsageAggregator()

    async def extract(self, total_pages: int) -> Optional[str]:
        """Return TOC markdown, or None when no batch shows a TOC"""
        logger.info(f"[{self.COMPONENT}] Starting TOC extraction from {total_pages} pages")

        if total_pages <= 0:
            logger.info(f"[{self.COMPONENT}] No pages to search")
            return None

        first_end = min(self.first_batch_size, total_pages)
        first = await self._extract_from_batch(1, first_end)

        if first.has_toc and first.toc_markdown:
            markdown = first.toc_markdown
            if first.continues_on_next_page and first_end < total_pages:
                markdown = await self._extend_with_continuation(markdown, first_end, total_pages)
            self.aggregator.log_summary(logger)
            logger.info(f"[{self.COMPONENT}] TOC extracted ({len(markdown)} chars)")
            return markdown

        if first_end < total_pages:
            second_start = first_end + 1
            second_end = min(first_end + self.second_batch_size, total_pages)
            logger.info(f"[{self.COMPONENT}] Searching second batch: pages {second_start}-{second_end}")
            second = await self._extract_from_batch(second_start, second_end)
            if second.has_toc and second.toc_markdown:
                self.aggregator.log_summary(logger)
                logger.info(f"[{self.COMPONENT}] TOC found in second batch ({len(second.toc_markdown)} chars)")
                return second.toc_markdown

        self.aggregator.log_summary(logger)
        logger.info(f"[{self.COMPONENT}] TOC not found in any batch")
        return None

    async def _extend_with_continuation(self, markdown: str, first_end: int, total_pages: int) -> str:
        """Merge the continuation batch; any failure keeps the partial TOC"""
        continuation_end = min(first_end + self.second_batch_size, total_pages)
        logger.info(f"[{self.COMPONENT}] TOC continues, extracting pages {first_end + 1}-{continuation_end}")
        try:
            continuation = await self._extract_from_batch(first_end + 1, continuation_end)
        except Exception as e:
            logger.warning(f"[{self.COMPONENT}] Continuation batch failed, keeping first batch: {e}")
            return markdown

        if continuation.has_toc and continuation.toc_markdown:
            return self.merge_markdown(markdown, continuation.toc_markdown)
        return markdown

    async def _extract_from_batch(self, start_page: int, end_page: int) -> VisionTocResponse:
        logger.info(f"[{self.COMPONENT}] Extracting from pages {start_page}-{end_page}")
        images = await load_page_images(self.output_path, start_page, end_page)

        result = await self.completion.call_vision(
            VisionTocResponse,
            messages=[{
                "role": "user",
                "content": [{"type": "text", "text": build_user_prompt(start_page, end_page)}, *images],
            }],
            models=self.models,
            component=self.COMPONENT,
            phase="extraction",
            max_retries=self.max_retries,
        )
        self.aggregator.track(result.usage)
        return result.output

    @staticmethod
    def merge_markdown(first: str, continuation: str) -> str:
        return f"{first.strip()}\n{continuation.strip()}"
