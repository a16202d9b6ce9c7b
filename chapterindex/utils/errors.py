"""
Exception types raised by the chapterindex pipeline

TOC errors share the TocExtractError base so callers can catch the whole
family; caption and page-range errors stand on their own.
"""
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models import ValidationResult


class TocExtractError(Exception):
    """Base class for every TOC discovery/extraction failure"""

    @staticmethod
    def get_error_message(error: BaseException) -> str:
        return str(error)

    @classmethod
    def from_error(cls, context: str, error: BaseException) -> "TocExtractError":
        """Wrap an arbitrary error, keeping it as __cause__"""
        wrapped = cls(f"{context}: {cls.get_error_message(error)}")
        wrapped.__cause__ = error
        return wrapped


class TocNotFoundError(TocExtractError):
    """No strategy could locate a usable table of contents"""

    def __init__(self, message: str = "Table of contents not found in the document"):
        super().__init__(message)


class TocParseError(TocExtractError):
    """Empty input or an uncategorized completion failure during extraction"""


class TocValidationError(TocExtractError):
    """Structural invariants still violated; carries the full issue list"""

    def __init__(self, message: str, validation_result: "ValidationResult"):
        super().__init__(message)
        self.validation_result = validation_result

    @property
    def issues(self):
        return self.validation_result.issues

    def get_summary(self) -> str:
        result = self.validation_result
        lines = [
            f"TOC validation failed: {result.error_count} error(s)",
            "",
            "Issues:",
        ]
        for issue in result.issues:
            lines.append(f"  [{issue.code}] {issue.message}")
            lines.append(f"    Path: {issue.path}")
            lines.append(f'    Entry: "{issue.entry.title}" (page {issue.entry.page_no})')
        return "\n".join(lines)


class CaptionParseError(Exception):
    """Caption prefix extraction failed"""


class CaptionValidationError(Exception):
    """Caption batch validation infrastructure failed"""


class PageRangeParseError(Exception):
    """Printed page numbers could not be resolved"""

    @classmethod
    def from_error(cls, context: str, error: BaseException) -> "PageRangeParseError":
        wrapped = cls(f"{context}: {error}")
        wrapped.__cause__ = error
        return wrapped


class StructuredOutputError(Exception):
    """The model never produced a reply matching the requested schema"""


class AbortError(Exception):
    """Cooperative cancellation observed at a stage checkpoint"""

    def __init__(self, message: str = "Document processing was aborted"):
        super().__init__(message)
