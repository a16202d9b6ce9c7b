"""
TOC Extractor - turns TOC markdown into a structured entry tree

Extraction runs as a bounded correction loop:

    Attempt(n, prior_entries, prior_issues)
        -> call model -> normalize -> validate
        -> ACCEPT | NEXT_ATTEMPT | EXHAUSTED

Attempt 0 is the plain extraction (phase "extraction"); attempts 1..3 embed
the previous entries and their validation issues (phase "correction-n").
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..core.completion import CompletionService, ModelBinding
from ..models import TocEntry, UsageRecord, ValidationIssue, ValidationResult
from ..utils.errors import TocParseError, TocValidationError
from .toc_validator import VALIDATION_CODE_DESCRIPTIONS, TocValidator

logger = logging.getLogger("chapterindex.toc_extractor")

MAX_VALIDATION_RETRIES = 3


class RawTocEntry(BaseModel):
    title: str = Field(..., description="Chapter/section title without page number indicators")
    level: int = Field(..., ge=1, description="Hierarchy depth (1 = top level)")
    page_no: int = Field(..., ge=1, description="Starting page number (Arabic numerals only)")
    children: List["RawTocEntry"] = Field(default_factory=list, description="Nested child entries")


class TocResponse(BaseModel):
    entries: List[RawTocEntry] = Field(..., description="Top-level TOC entries with nested children")


RawTocEntry.model_rebuild()


class AttemptOutcome(str, Enum):
    ACCEPT = "accept"
    NEXT_ATTEMPT = "next_attempt"
    EXHAUSTED = "exhausted"


@dataclass
class Attempt:
    """State carried between extraction attempts"""
    n: int = 0
    prior_entries: List[TocEntry] = field(default_factory=list)
    prior_issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def phase(self) -> str:
        return "extraction" if self.n == 0 else f"correction-{self.n}"


@dataclass
class TocExtractionResult:
    entries: List[TocEntry]
    usages: List[UsageRecord]


SYSTEM_PROMPT = """You are a document structure extraction assistant. Your task is to parse a table of contents (TOC) from markdown format and extract structured entries.

## Instructions

1. **Title**: Extract the exact chapter/section title from each line. Remove page number indicators like "..... 10" or "... 5" at the end.

2. **Level**: Determine the hierarchy depth:
   - Level 1: Top-level chapters (e.g., "제1장", "Chapter 1", "I.", "Part 1")
   - Level 2: Main sections within chapters (e.g., "1.", "1.1", "A.")
   - Level 3: Subsections (e.g., "1.1.1", "a.", "(1)")
   - Use indentation and numbering patterns to infer level

3. **Page Number**: Extract the page number from each entry. Use only Arabic numerals for page numbers.

4. **Children**: Nest child entries under parent entries based on their hierarchy level.

5. **IMPORTANT - Extract Main TOC Only**: Only extract the main document table of contents. EXCLUDE:
   - Front matter with Roman numeral pages (i, ii, xxi, ...) such as 일러두기, 발간사, 서문, 범례, Preface, Foreword
   - Photo/image indices (사진 목차, 寫眞 目次, List of Photos, List of Figures)
   - Drawing/diagram indices (도면 목차, 圖面 目次, List of Drawings)
   - Table indices (표 목차, 表 目次, List of Tables)
   - Appendix indices (부록 목차, Appendix Index)
   - Any other supplementary material indices

## Output Format

Return a list of top-level entries. Each level 1 entry contains its children (level 2+) nested properly.

## Example

Input:
- 제1장 서론 ..... 1
  - 1. 연구 배경 ..... 3
  - 2. 연구 목적 ..... 5
- 제2장 방법론 ..... 10

Output:
{
  "entries": [
    {
      "title": "제1장 서론",
      "level": 1,
      "page_no": 1,
      "children": [
        {"title": "1. 연구 배경", "level": 2, "page_no": 3, "children": []},
        {"title": "2. 연구 목적", "level": 2, "page_no": 5, "children": []}
      ]
    },
    {"title": "제2장 방법론", "level": 1, "page_no": 10, "children": []}
  ]
}"""


def build_user_prompt(markdown: str) -> str:
    return f"Extract the table of contents structure from the following markdown:\n\n{markdown}"


def build_correction_prompt(markdown: str, previous_entries: List[TocEntry],
                            issues: List[ValidationIssue]) -> str:
    error_lines = []
    for issue in issues:
        desc = VALIDATION_CODE_DESCRIPTIONS.get(issue.code, "Unknown validation error.")
        error_lines.append(
            f"- [{issue.code}] {issue.message}\n"
            f"  Path: {issue.path}\n"
            f'  Entry: "{issue.entry.title}" (page {issue.entry.page_no})\n'
            f"  Rule: {desc}"
        )

    previous_json = json.dumps(
        [entry.model_dump() for entry in previous_entries], ensure_ascii=False, indent=2
    )
    errors = "\n\n".join(error_lines)

    return f"""Your previous TOC extraction had validation errors. Please fix them and re-extract.

## Validation Errors

{errors}

## Common Mistakes to Avoid

1. **Hierarchy confusion**: Entries with the same numbering prefix (e.g., "4)") can belong to different hierarchy levels depending on context. Use indentation and surrounding entries to determine the correct parent-child relationship.
2. **Page number misread**: Carefully distinguish Roman numerals (VI=6) from Arabic numerals. "VI. 고찰" at page 277 is NOT "V. 고찰" at page 27.
3. **Page order**: Within the same parent, sibling entries must have non-decreasing page numbers. If a page number decreases, the entry likely belongs to a different hierarchy level.

## Original Markdown

{markdown}

## Your Previous Extraction (with errors)

{previous_json}

## Instructions

Re-extract the TOC structure from the original markdown above. Fix all validation errors listed above. Return the corrected entries."""


def normalize_entries(entries: List[RawTocEntry], level: int = 1) -> List[TocEntry]:
    """Trim titles and force level = depth (roots are level 1)"""
    return [
        TocEntry(
            title=entry.title.strip(),
            level=level,
            page_no=entry.page_no,
            children=normalize_entries(entry.children, level + 1),
        )
        for entry in entries
    ]


class TocExtractor:
    """
    Structured TOC extraction with validation feedback

    Args:
        completion: CompletionService
        models: Model binding for extraction and corrections
        max_retries: Transport retries per completion call
        skip_validation: Accept the first extraction without structural checks
        max_title_length / max_first_entry_ratio: TocValidator options
    """

    COMPONENT = "TocExtractor"

    def __init__(
        self,
        completion: CompletionService,
        models: ModelBinding,
        max_retries: int = 3,
        skip_validation: bool = False,
        max_title_length: int = 200,
        max_first_entry_ratio: float = 0.5,
    ):
        self.completion = completion
        self.models = models
        self.max_retries = max_retries
        self.skip_validation = skip_validation
        self.max_title_length = max_title_length
        self.max_first_entry_ratio = max_first_entry_ratio

    async def extract(self, markdown: str, total_pages: Optional[int] = None) -> TocExtractionResult:
        """
        Extract the TOC tree from markdown

        Args:
            markdown: TOC area as markdown
            total_pages: Upper page bound for validation, None when unbounded

        Raises:
            TocParseError: empty markdown or a completion failure
            TocValidationError: still invalid after MAX_VALIDATION_RETRIES corrections
        """
        logger.info(f"[{self.COMPONENT}] Starting TOC extraction ({len(markdown)} chars)")

        if not markdown.strip():
            logger.error(f"[{self.COMPONENT}] Cannot extract TOC from empty markdown content")
            raise TocParseError("TOC extraction failed: provided markdown content is empty")

        validator = TocValidator(
            total_pages=total_pages,
            max_title_length=self.max_title_length,
            max_first_entry_ratio=self.max_first_entry_ratio,
        )
        usages: List[UsageRecord] = []
        attempt = Attempt()

        try:
            while True:
                entries = await self._run_attempt(markdown, attempt, usages)
                result = self._validate(validator, entries)
                outcome = self._next_outcome(attempt, result)

                if outcome is AttemptOutcome.ACCEPT:
                    break

                if outcome is AttemptOutcome.EXHAUSTED:
                    error = TocValidationError(
                        f"TOC validation failed with {result.error_count} error(s)", result
                    )
                    logger.error(
                        f"[{self.COMPONENT}] Validation failed after {MAX_VALIDATION_RETRIES} retries:\n"
                        f"{error.get_summary()}"
                    )
                    raise error

                attempt = Attempt(n=attempt.n + 1, prior_entries=entries, prior_issues=result.issues)
                logger.warning(
                    f"[{self.COMPONENT}] Validation failed (attempt {attempt.n}/{MAX_VALIDATION_RETRIES}), "
                    "retrying with correction feedback"
                )
        except TocValidationError:
            raise
        except Exception as e:
            logger.error(f"[{self.COMPONENT}] Extraction failed: {e}")
            raise TocParseError(f"Failed to extract TOC structure: {e}") from e

        logger.info(
            f"[{self.COMPONENT}] Extraction completed: {len(entries)} top-level entries "
            f"({len(usages)} LLM call(s))"
        )
        return TocExtractionResult(entries=entries, usages=usages)

    async def _run_attempt(self, markdown: str, attempt: Attempt,
                           usages: List[UsageRecord]) -> List[TocEntry]:
        if attempt.n == 0:
            user_prompt = build_user_prompt(markdown)
        else:
            user_prompt = build_correction_prompt(markdown, attempt.prior_entries, attempt.prior_issues)

        result = await self.completion.call(
            TocResponse,
            system_prompt=SYSTEM_PROMPT,
            user_prompt=user_prompt,
            models=self.models,
            component=self.COMPONENT,
            phase=attempt.phase,
            max_retries=self.max_retries,
        )
        usages.append(result.usage)
        return normalize_entries(result.output.entries)

    def _validate(self, validator: TocValidator, entries: List[TocEntry]) -> Optional[ValidationResult]:
        if self.skip_validation or not entries:
            return None
        return validator.validate(entries)

    @staticmethod
    def _next_outcome(attempt: Attempt, result: Optional[ValidationResult]) -> AttemptOutcome:
        if result is None or result.valid:
            return AttemptOutcome.ACCEPT
        if attempt.n >= MAX_VALIDATION_RETRIES:
            return AttemptOutcome.EXHAUSTED
        return AttemptOutcome.NEXT_ATTEMPT
