"""
Caption Pipeline - parse -> validate -> fallback reparse for one resource type
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..core.completion import CompletionService, ModelBinding
from ..core.usage import TokenUsageAggregator
from ..models import Caption
from .caption_parser import CaptionParser
from .caption_validator import CaptionValidator

logger = logging.getLogger("chapterindex.caption_pipeline")


@dataclass
class _CaptionSlot:
    resource_index: int
    text: str


class CaptionPipeline:
    """
    Produces a sparse resource_index -> Caption map

    Args:
        parser: Primary caption parser
        validator: Caption validator
        completion: Used to build the fallback parser
        fallback_model: Model for reparsing invalid captions
        enable_fallback_retry: Reparse invalid captions; otherwise they are kept as-is
        parser_batch_size / validator_batch_size: 0 = sequential / skip validation
    """

    def __init__(
        self,
        parser: CaptionParser,
        validator: CaptionValidator,
        completion: CompletionService,
        fallback_model: str,
        enable_fallback_retry: bool = False,
        parser_batch_size: int = 10,
        validator_batch_size: int = 10,
        max_retries: int = 3,
        aggregator: Optional[TokenUsageAggregator] = None,
    ):
        self.parser = parser
        self.validator = validator
        self.completion = completion
        self.fallback_model = fallback_model
        self.enable_fallback_retry = enable_fallback_retry
        self.parser_batch_size = parser_batch_size
        self.validator_batch_size = validator_batch_size
        self.max_retries = max_retries
        self.aggregator = aggregator

    async def process(self, caption_texts: List[Optional[str]], resource_type: str) -> Dict[int, Caption]:
        """
        Args:
            caption_texts: One entry per resource, None when it has no caption
            resource_type: "images" / "tables", used in log messages
        """
        captions_by_index: Dict[int, Caption] = {}

        slots = [
            _CaptionSlot(resource_index=i, text=text)
            for i, text in enumerate(caption_texts)
            if text is not None
        ]
        if not slots:
            return captions_by_index

        parsed = await self.parser.parse_batch([slot.text for slot in slots], self.parser_batch_size)

        if len(parsed) != len(slots):
            slots, parsed = self._recover_from_mismatch(slots, parsed, resource_type)

        for slot, caption in zip(slots, parsed):
            captions_by_index[slot.resource_index] = caption

        if not parsed:
            return captions_by_index

        results = await self.validator.validate_batch(
            parsed, [slot.text for slot in slots], self.validator_batch_size
        )
        failed = [i for i, is_valid in enumerate(results) if not is_valid]
        if not failed:
            return captions_by_index

        for i in failed:
            logger.warning(
                f'[CaptionPipeline] Invalid {resource_type} caption [{slots[i].resource_index}]: '
                f'"{slots[i].text}" | parsed num="{parsed[i].num}"'
            )

        if not self.enable_fallback_retry:
            logger.warning(
                f"[CaptionPipeline] {len(failed)} {resource_type} caption(s) failed validation "
                "(kept as-is, fallback retry disabled)"
            )
            return captions_by_index

        logger.info(
            f"[CaptionPipeline] Reparsing {len(failed)} failed {resource_type} captions with fallback model..."
        )
        fallback_parser = CaptionParser(
            self.completion,
            ModelBinding(primary=self.fallback_model),
            component_name="CaptionParser-fallback",
            max_retries=self.max_retries,
            aggregator=self.aggregator,
        )
        reparsed = await fallback_parser.parse_batch([slots[i].text for i in failed], 0)

        for i, caption in zip(failed, reparsed):
            captions_by_index[slots[i].resource_index] = caption

        logger.info(f"[CaptionPipeline] Reparsed {len(reparsed)} {resource_type} captions")
        return captions_by_index

    @staticmethod
    def _recover_from_mismatch(slots: List[_CaptionSlot], parsed: List[Caption], resource_type: str):
        """Realign parsed captions by full_text; duplicate texts share the last parse"""
        logger.warning(
            f"[CaptionPipeline] Caption parsing length mismatch for {resource_type}: "
            f"expected {len(slots)}, got {len(parsed)}. Attempting recovery by matching full_text..."
        )

        parsed_by_text = {caption.full_text: caption for caption in parsed}

        recovered_slots = []
        recovered = []
        for slot in slots:
            caption = parsed_by_text.get(slot.text)
            if caption is None:
                logger.warning(
                    f'[CaptionPipeline] Skipping {resource_type} caption at index {slot.resource_index}: '
                    f'"{slot.text}" (not found in parsed results)'
                )
                continue
            recovered_slots.append(slot)
            recovered.append(caption)

        if len(recovered) != len(recovered_slots):
            raise RuntimeError(
                f"[CaptionPipeline] Failed to recover from length mismatch: "
                f"recovered {len(recovered)} captions for {len(recovered_slots)} valid items"
            )

        logger.info(
            f"[CaptionPipeline] Successfully recovered {len(recovered)} {resource_type} captions after length mismatch"
        )
        return recovered_slots, recovered
