"""
TOC Content Validator - semantic check that a located TOC area is a real
main-document table of contents
"""
import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field

from ..core.completion import CompletionService, ModelBinding
from ..core.usage import TokenUsageAggregator

logger = logging.getLogger("chapterindex.toc_content_validator")

ContentType = Literal["pure_toc", "mixed", "resource_only", "invalid"]


class TocContentResponse(BaseModel):
    is_valid: bool = Field(..., description="True for pure_toc and mixed content")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Certainty between 0 and 1")
    content_type: ContentType
    extracted_toc_markdown: Optional[str] = Field(
        None, description="Main TOC portion only, for mixed content; null otherwise"
    )
    reason: str = Field(..., description="Short explanation in English")


class TocContentValidationResult(BaseModel):
    is_valid: bool
    confidence: float
    content_type: ContentType
    extracted_toc_markdown: Optional[str] = None
    valid_toc_markdown: Optional[str] = None
    reason: str = ""
    source_markdown: str = ""


SYSTEM_PROMPT = """You are a document structure analyst. Classify the provided content into exactly one category.

## Content Types

### pure_toc
ONLY a main document table of contents:
- Chapters/sections with page numbers, hierarchical titles ("Chapter 1", "제1장", "1.1 Introduction")
- Three or more entries organized by document structure
- No resource indices mixed in

### mixed
BOTH a main document TOC AND resource indices (photo/table/drawing lists).
Extract ONLY the main TOC portion into extracted_toc_markdown, preserving its formatting.

### resource_only
ONLY resource indices, for example:
- Photo indices (사진 목차, 寫眞 目次, List of Figures, List of Photos)
- Table indices (표 목차, 表 目次, List of Tables)
- Drawing indices (도면 목차, 圖面 目次, List of Drawings)
- Appendix indices (부록 목차, Appendix Index)

### invalid
Anything else: body text, fewer than 3 entries, bibliographies, alphabetical keyword indexes, unstructured content.

## Response Guidelines
- is_valid is true for pure_toc and mixed, false for resource_only and invalid
- confidence between 0.0 and 1.0
- extracted_toc_markdown only for mixed, otherwise null
- reason MUST be written in English

## Examples
Input: "제1장 서론 ..... 1\\n제2장 조사개요 ..... 5\\n제3장 조사결과 ..... 15"
Output: {"is_valid": true, "content_type": "pure_toc", "extracted_toc_markdown": null}

Input: "제1장 서론 ..... 1\\n제2장 조사개요 ..... 5\\n\\n사진목차\\n사진 1 전경 ..... 50"
Output: {"is_valid": true, "content_type": "mixed", "extracted_toc_markdown": "제1장 서론 ..... 1\\n제2장 조사개요 ..... 5"}

Input: "사진목차\\n사진 1 전경 ..... 50\\n사진 2 유물 ..... 51"
Output: {"is_valid": false, "content_type": "resource_only", "extracted_toc_markdown": null}"""


class TocContentValidator:
    """
    Classifies serialized TOC-area text as pure_toc / mixed / resource_only / invalid
    """

    COMPONENT = "TocContentValidator"

    def __init__(
        self,
        completion: CompletionService,
        models: ModelBinding,
        confidence_threshold: float = 0.7,
        max_retries: int = 3,
        aggregator: Optional[TokenUsageAggregator] = None,
    ):
        self.completion = completion
        self.models = models
        self.confidence_threshold = confidence_threshold
        self.max_retries = max_retries
        self.aggregator = aggregator

    async def validate(self, markdown: str) -> TocContentValidationResult:
        logger.info(f"[{self.COMPONENT}] Validating TOC content ({len(markdown)} chars)...")

        if not markdown.strip():
            logger.info(f"[{self.COMPONENT}] Empty markdown, returning invalid")
            return TocContentValidationResult(
                is_valid=False,
                confidence=1.0,
                content_type="invalid",
                reason="Empty content",
                source_markdown=markdown,
            )

        result = await self.completion.call(
            TocContentResponse,
            system_prompt=SYSTEM_PROMPT,
            user_prompt=f"Analyze the following content and classify it:\n\n{markdown}",
            models=self.models,
            component=self.COMPONENT,
            phase="validation",
            max_retries=self.max_retries,
        )
        if self.aggregator is not None:
            self.aggregator.track(result.usage)

        output = result.output
        logger.info(
            f"[{self.COMPONENT}] Result: is_valid={output.is_valid}, "
            f"content_type={output.content_type}, confidence={output.confidence}"
        )

        validation = TocContentValidationResult(
            is_valid=output.is_valid,
            confidence=output.confidence,
            content_type=output.content_type,
            extracted_toc_markdown=output.extracted_toc_markdown,
            reason=output.reason,
            source_markdown=markdown,
        )
        if self.is_valid(validation):
            validation.valid_toc_markdown = self.get_valid_markdown(validation)
        return validation

    def is_valid(self, result: TocContentValidationResult) -> bool:
        return result.is_valid and result.confidence >= self.confidence_threshold

    @staticmethod
    def get_valid_markdown(result: TocContentValidationResult) -> Optional[str]:
        """Original text for pure_toc, the extracted part for mixed, otherwise None"""
        if result.content_type == "pure_toc":
            return result.source_markdown
        if result.content_type == "mixed":
            return result.extracted_toc_markdown or None
        return None
