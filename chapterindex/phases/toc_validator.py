"""
TOC Validator - structural invariant checks on an extracted entry tree

Rule codes:
    V001 page order decreased within a sibling list
    V002 page number out of range
    V003 empty title
    V004 title too long
    V005 child page before parent page
    V006 duplicate (title, page) anywhere in the tree
    V007 first entry starts too late in the document
"""
from typing import List, Optional, Set

from ..models import TocEntry, ValidationIssue, ValidationResult
from ..utils.errors import TocValidationError

VALIDATION_CODE_DESCRIPTIONS = {
    "V001": "Page numbers must be in non-decreasing order within the same level. "
            "A decrease usually means a hierarchy or page number error.",
    "V002": "Page number is out of valid range (must be >= 1 and <= total pages).",
    "V003": "Title is empty or contains only whitespace.",
    "V004": "Title exceeds the maximum allowed length.",
    "V005": "Child page number is before parent page number. "
            "Children must start on or after the parent page.",
    "V006": "Duplicate entry detected (same title and page number).",
    "V007": "First TOC entry starts too late in the document. Earlier entries may be missing.",
}


class TocValidator:
    """
    Validates a TOC forest

    Args:
        total_pages: Upper bound for page numbers, None for unbounded
            (unknown length or compiled volume)
        max_title_length: V004 threshold
        max_first_entry_ratio: V007 fires when the first top-level entry
            starts beyond this fraction of total_pages
    """

    def __init__(
        self,
        total_pages: Optional[int] = None,
        max_title_length: int = 200,
        max_first_entry_ratio: float = 0.5,
    ):
        self.total_pages = total_pages
        self.max_title_length = max_title_length
        self.max_first_entry_ratio = max_first_entry_ratio

    def validate(self, entries: List[TocEntry]) -> ValidationResult:
        issues: List[ValidationIssue] = []
        self._validate_entries(entries, "", None, set(), issues)
        self._validate_first_entry(entries, issues)
        return ValidationResult(valid=not issues, error_count=len(issues), issues=issues)

    def validate_or_raise(self, entries: List[TocEntry]) -> ValidationResult:
        result = self.validate(entries)
        if not result.valid:
            raise TocValidationError(
                f"TOC validation failed with {result.error_count} error(s)", result
            )
        return result

    def _validate_entries(
        self,
        entries: List[TocEntry],
        parent_path: str,
        parent: Optional[TocEntry],
        seen_keys: Set[str],
        issues: List[ValidationIssue],
    ):
        prev_page_no = parent.page_no if parent else 0

        for i, entry in enumerate(entries):
            path = f"{parent_path}.children[{i}]" if parent_path else f"[{i}]"

            def add(code: str, message: str):
                issues.append(ValidationIssue(code=code, message=message, path=path, entry=entry))

            if not entry.title or not entry.title.strip():
                add("V003", "Title is empty or contains only whitespace")

            if len(entry.title) > self.max_title_length:
                add("V004", f"Title exceeds {self.max_title_length} characters ({len(entry.title)})")

            if entry.page_no < 1:
                add("V002", f"Page number must be >= 1, got {entry.page_no}")
            if self.total_pages is not None and entry.page_no > self.total_pages:
                add("V002", f"Page number {entry.page_no} exceeds document total pages ({self.total_pages})")

            if entry.page_no < prev_page_no:
                add("V001", f"Page number decreased from {prev_page_no} to {entry.page_no}")
            prev_page_no = entry.page_no

            if parent is not None and entry.page_no < parent.page_no:
                add("V005", f"Child page ({entry.page_no}) is before parent page ({parent.page_no})")

            key = f"{entry.title}:{entry.page_no}"
            if key in seen_keys:
                add("V006", f'Duplicate entry: "{entry.title}" at page {entry.page_no}')
            seen_keys.add(key)

            if entry.children:
                self._validate_entries(entry.children, path, entry, seen_keys, issues)

    def _validate_first_entry(self, entries: List[TocEntry], issues: List[ValidationIssue]):
        if not entries or self.total_pages is None:
            return
        first = entries[0]
        limit = self.total_pages * self.max_first_entry_ratio
        if first.page_no > limit:
            issues.append(ValidationIssue(
                code="V007",
                message=(
                    f"First entry starts at page {first.page_no}, beyond "
                    f"{self.max_first_entry_ratio:.0%} of {self.total_pages} pages"
                ),
                path="[0]",
                entry=first,
            ))
