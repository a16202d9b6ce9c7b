"""
chapterindex - Chapter structure extraction for docling documents

Features:
- Rule-based TOC location with vision fallback
- Structured TOC extraction with validation feedback
- Printed page number resolution
- Image/table caption parsing
- Primary/fallback models with token usage reporting

Modules:
- core: LLM client, completion service, usage accounting
- phases: TOC finder/validators/extractors, caption pipeline, page ranges, chapters
- utils: Errors, logging, reference resolution, markdown, text cleaning
"""

__version__ = "1.0.0"

from .core.completion import CompletionService, ModelBinding
from .core.llm_client import LLMClient
from .core.usage import TokenUsageAggregator
from .main import DocumentProcessor, ProcessingOptions, ResolvedConfig
from .models import Chapter, DoclingDocument, ProcessingResult, TocEntry
from .utils.errors import (
    AbortError,
    CaptionParseError,
    CaptionValidationError,
    PageRangeParseError,
    TocExtractError,
    TocNotFoundError,
    TocParseError,
    TocValidationError,
)

__all__ = [
    'LLMClient',
    'CompletionService',
    'ModelBinding',
    'TokenUsageAggregator',
    'DocumentProcessor',
    'ProcessingOptions',
    'ResolvedConfig',
    'DoclingDocument',
    'ProcessingResult',
    'Chapter',
    'TocEntry',

    # Errors
    'TocExtractError',
    'TocNotFoundError',
    'TocParseError',
    'TocValidationError',
    'CaptionParseError',
    'CaptionValidationError',
    'PageRangeParseError',
    'AbortError',
]
