"""
Caption Parser - extracts the "prefix + number" label ("Figure 2", "도판 1")
from image/table caption texts
"""
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from ..core.completion import CompletionService, ModelBinding
from ..core.usage import TokenUsageAggregator
from ..models import Caption
from ..utils.errors import CaptionParseError
from ..utils.helpers import process_batches

logger = logging.getLogger("chapterindex.caption_parser")


class CaptionSingleResponse(BaseModel):
    num: Optional[str] = Field(None, description='Caption prefix + number (e.g., "도판 1", "Figure 2")')


class CaptionExtraction(BaseModel):
    index: int = Field(..., description="Index of the caption as shown in the input list")
    num: Optional[str] = Field(None, description='Caption prefix + number (e.g., "도판 1", "Figure 2")')


class CaptionBatchResponse(BaseModel):
    results: List[CaptionExtraction]


RULES = """Rules:
1. Extract if the text follows a caption pattern: <prefix word(s)> <number>
   - The prefix can be ANY word(s) that label images/tables/figures
   - Common examples: 도판, 사진, 그림, 도면, 표, 원색사진, 흑백사진, Figure, Photo, Plate
   - "원색사진 1. 조사지역" -> "원색사진 1"
2. IGNORE leading punctuation/brackets:
   - "(사진 16> 느티나무" -> "사진 16"
   - "<도판 1> 유적" -> "도판 1"
   - "[그림 2] 전경" -> "그림 2"
3. Return null if:
   - It is a numbered list item: "1. 유적 전경" -> null
   - It is a date/time or year reference: "2024년 조사 현황" -> null
   - It starts with a number without a prefix: "123 설명" -> null
4. PRESERVE original spacing exactly ("도판1 어쩌구" -> "도판1")
5. Include the full number ("1-2", "3a"), not just the first digit
6. Include a decimal part that directly follows ("그림 3.6. 한반도" -> "그림 3.6");
   a period after a space-separated number is not included ("도판 2. 유적" -> "도판 2")
7. Stop at the first whitespace, underscore or punctuation (except a decimal point) after the number

Examples:
- "도판 1 유적 전경" -> "도판 1"
- "Figure 3: Site plan" -> "Figure 3"
- "Table 4a. Artifact list" -> "Table 4a"
- "도판 5-2 층위 단면" -> "도판 5-2"
- "설명 없는 이미지" -> null
- "1. 유구 현황" -> null"""


def build_system_prompt(single: bool = False) -> str:
    target = "an image/table caption" if single else "image/table captions"
    return (
        "You are a caption prefix extractor for archaeological excavation reports.\n\n"
        f'Extract the caption prefix and number (e.g., "도판 1", "Figure 2") from {target}.\n'
        "Return the prefix + number part as a string, or null if no number exists.\n\n"
        f"{RULES}"
    )


def build_batch_prompt(captions: List[Tuple[int, str]]) -> str:
    caption_list = "\n".join(f"[{index}] {text}" for index, text in captions)
    return (
        "Extract caption prefix and number from the following captions:\n\n"
        f"{caption_list}\n\n"
        'Return "results": one item per caption with "index" (the number in brackets) '
        'and "num" (extracted prefix + number, or null).'
    )


def build_single_prompt(caption: str) -> str:
    return (
        "Extract caption prefix and number from the following caption:\n\n"
        f'"{caption}"\n\n'
        'Return only {"num": "<prefix + number>"} or {"num": null}.'
    )


def extract_num_from_full_text(full_text: str, extracted_num: Optional[str]) -> Optional[str]:
    """
    Re-anchor the extracted label to the caption's own characters

    Exact substring first, then case-insensitive; when neither matches the
    model's value is kept.
    """
    if not extracted_num:
        return None

    index = full_text.find(extracted_num)
    if index == -1:
        index = full_text.lower().find(extracted_num.lower())
        if index == -1:
            return extracted_num
    return full_text[index:index + len(extracted_num)]


class CaptionParser:
    """
    Args:
        completion: CompletionService
        models: Model binding (the fallback reparse uses ModelBinding(fallback_model))
        component_name: Usage/log tag, "CaptionParser" or "CaptionParser-fallback"
    """

    def __init__(
        self,
        completion: CompletionService,
        models: ModelBinding,
        component_name: str = "CaptionParser",
        max_retries: int = 3,
        aggregator: Optional[TokenUsageAggregator] = None,
    ):
        self.completion = completion
        self.models = models
        self.component_name = component_name
        self.max_retries = max_retries
        self.aggregator = aggregator or TokenUsageAggregator()

    async def parse_batch(self, captions: List[str], batch_size: int) -> List[Caption]:
        """
        Parse captions; batch_size 0 processes them one call at a time

        Raises:
            CaptionParseError: any completion failure
        """
        tag = f"[{self.component_name}]"
        logger.info(f"{tag} Starting caption parsing for {len(captions)} captions with model: {self.models.primary}")

        if not captions:
            logger.info(f"{tag} No captions to parse")
            return []

        try:
            if batch_size == 0:
                logger.info(f"{tag} Using sequential processing (batch_size=0)")
                results = []
                for i, full_text in enumerate(captions):
                    logger.info(f"{tag} Processing {i + 1} / {len(captions)}...")
                    results.append(await self._parse_single(full_text))
            else:
                indexed = list(enumerate(captions))
                batch_results = await process_batches(indexed, batch_size, self._parse_indexed_batch)
                batch_results.sort(key=lambda item: item[0])
                results = [caption for _, caption in batch_results]
        except Exception as e:
            logger.error(f"{tag} Parsing failed: {e}")
            raise CaptionParseError(f"Failed to parse captions: {e}") from e

        self.aggregator.log_summary(logger)
        logger.info(
            f"{tag} Completed: {len(results)} captions parsed, "
            f"{sum(1 for c in results if c.num)} with extracted numbers"
        )
        return results

    async def _parse_single(self, full_text: str) -> Caption:
        result = await self.completion.call(
            CaptionSingleResponse,
            system_prompt=build_system_prompt(single=True),
            user_prompt=build_single_prompt(full_text),
            models=self.models,
            component=self.component_name,
            phase="caption-extraction",
            max_retries=self.max_retries,
        )
        self.aggregator.track(result.usage)
        return Caption(full_text=full_text, num=extract_num_from_full_text(full_text, result.output.num))

    async def _parse_indexed_batch(self, batch: List[Tuple[int, str]]) -> List[Tuple[int, Caption]]:
        result = await self.completion.call(
            CaptionBatchResponse,
            system_prompt=build_system_prompt(),
            user_prompt=build_batch_prompt(batch),
            models=self.models,
            component=self.component_name,
            phase="caption-extraction",
            max_retries=self.max_retries,
        )
        self.aggregator.track(result.usage)

        items = result.output.results
        if len(items) != len(batch):
            logger.warning(
                f"[{self.component_name}] Model returned {len(items)} results for {len(batch)} captions. "
                "This may cause index mismatch."
            )

        texts = dict(batch)
        parsed = []
        seen = set()
        for item in items:
            # The prompt shows original indices; accept batch positions too
            if item.index in texts:
                index = item.index
            elif 0 <= item.index < len(batch):
                index = batch[item.index][0]
            else:
                logger.warning(f"[{self.component_name}] Ignoring result with unknown index {item.index}")
                continue
            if index in seen:
                logger.warning(f"[{self.component_name}] Ignoring repeated result for index {index}")
                continue
            seen.add(index)
            full_text = texts[index]
            parsed.append((index, Caption(
                full_text=full_text,
                num=extract_num_from_full_text(full_text, item.num),
            )))
        return parsed
