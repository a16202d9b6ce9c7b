"""
Caption Validator - asks the model whether each parsed caption label
was extracted correctly
"""
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from ..core.completion import CompletionService, ModelBinding
from ..core.usage import TokenUsageAggregator
from ..models import Caption
from ..utils.errors import CaptionValidationError
from ..utils.helpers import process_batches

logger = logging.getLogger("chapterindex.caption_validator")


class CaptionValidationItem(BaseModel):
    index: int = Field(..., description="Index of the caption as shown in the input list")
    is_valid: bool = Field(..., description="Whether the parsed caption is correct")
    reason: Optional[str] = Field(None, description="Brief explanation if invalid, null if valid")


class CaptionValidationBatch(BaseModel):
    results: List[CaptionValidationItem]


SYSTEM_PROMPT = """You are a caption validation expert for archaeological excavation reports.

Validate whether parsed caption prefixes (num field) are correctly extracted from the original caption texts.

## Caption Pattern
A valid caption follows <prefix word(s)> <number>. The prefix can be any word(s)
labelling images/tables/figures (도판, 사진, 그림, Figure, Photo, Plate, ...).
Leading punctuation/brackets are ignored.

## Validation Rules
1. Pattern: the original text MUST follow <prefix> <number>
   - "39 3월 28일(백제)" -> num="39" is invalid (should be null)
   - "1. 조사 개요" -> num="1" is invalid (numbered list, should be null)
2. Correctness: "도판 1 유적 전경" -> num="도판" is invalid (incomplete)
3. Spacing must match the original exactly: "도판 1" -> num="도판1" is invalid
4. Completeness: "Figure 2-3" -> num="Figure 2" is invalid
5. Decimal handling: "그림 3.6. 한반도" -> "그림 3.6" is valid; "도판 2. 유적" -> "도판 2" is valid
6. Null handling: null is valid only when the text has no caption number
   - "유적 전경 사진" -> null is valid
   - "원색사진 1 조사" -> null is invalid

## Response
For each caption return index (the number in brackets), is_valid, and reason
(null if valid, brief explanation if invalid)."""


def build_user_prompt(items: List[Tuple[int, Caption, str]]) -> str:
    lines = []
    for index, caption, original_text in items:
        parsed = f'"{caption.num}"' if caption.num is not None else "null"
        lines.append(f'[{index}] Original: "{original_text}" | Parsed num: {parsed}')
    caption_list = "\n".join(lines)
    return f"Validate the following caption parsing results:\n\n{caption_list}"


class CaptionValidator:
    COMPONENT = "CaptionValidator"

    def __init__(
        self,
        completion: CompletionService,
        models: ModelBinding,
        max_retries: int = 3,
        aggregator: Optional[TokenUsageAggregator] = None,
    ):
        self.completion = completion
        self.models = models
        self.max_retries = max_retries
        self.aggregator = aggregator

    async def validate_batch(self, captions: List[Caption], original_texts: List[str],
                             batch_size: int) -> List[bool]:
        """
        Validate parsed captions against their source texts

        Returns:
            One flag per caption, in input order

        Raises:
            ValueError: captions and original_texts differ in length
            CaptionValidationError: any completion failure
        """
        logger.info(f"[{self.COMPONENT}] Validating {len(captions)} captions with batch size {batch_size}...")

        if len(captions) != len(original_texts):
            raise ValueError(
                f"[{self.COMPONENT}] Captions and original_texts length mismatch: "
                f"{len(captions)} vs {len(original_texts)}"
            )

        if not captions:
            logger.info(f"[{self.COMPONENT}] No captions to validate")
            return []

        if batch_size == 0:
            logger.info(f"[{self.COMPONENT}] Skipping validation (batch_size=0), assuming all captions are valid")
            return [True] * len(captions)

        items = [(i, caption, original_texts[i]) for i, caption in enumerate(captions)]
        try:
            batch_results = await process_batches(items, batch_size, self._validate_indexed_batch)
        except Exception as e:
            logger.error(f"[{self.COMPONENT}] Validation failed: {e}")
            raise CaptionValidationError(f"Failed to validate captions: {e}") from e

        verdicts = dict(batch_results)
        results = []
        for i in range(len(captions)):
            if i not in verdicts:
                logger.warning(f"[{self.COMPONENT}] No verdict for caption [{i}], keeping it as valid")
            results.append(verdicts.get(i, True))

        logger.info(
            f"[{self.COMPONENT}] Completed: {sum(results)}/{len(results)} captions validated as correct"
        )
        if self.aggregator is not None:
            self.aggregator.log_summary(logger)
        return results

    async def _validate_indexed_batch(self, batch: List[Tuple[int, Caption, str]]) -> List[Tuple[int, bool]]:
        result = await self.completion.call(
            CaptionValidationBatch,
            system_prompt=SYSTEM_PROMPT,
            user_prompt=build_user_prompt(batch),
            models=self.models,
            component=self.COMPONENT,
            phase="validation",
            max_retries=self.max_retries,
        )
        if self.aggregator is not None:
            self.aggregator.track(result.usage)

        batch_indices = {index for index, _, _ in batch}
        verdicts = []
        for item in result.output.results:
            if item.index not in batch_indices:
                continue
            if not item.is_valid and item.reason:
                logger.debug(f"[{self.COMPONENT}] Caption [{item.index}] invalid: {item.reason}")
            verdicts.append((item.index, item.is_valid))
        return verdicts
