"""
TOC Finder - rule-based search for the TOC area of a docling document

Stage 1: keyword search ("목차", "目次", "Contents", ...) in the first pages,
         then walk up to the enclosing list/group or table.
Stage 2: structural scoring of every TOC-like group and table.
Either hit is expanded to adjacent pages that continue the TOC.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..models import (
    DoclingDocument,
    DoclingGroupItem,
    DoclingTableItem,
    DoclingTextItem,
    TocAreaResult,
)
from ..utils.errors import TocNotFoundError
from ..utils.ref_resolver import RefResolver

logger = logging.getLogger("chapterindex.toc_finder")

TOC_KEYWORDS = [
    # Korean
    "목차", "차례", "목 차",
    # Chinese
    "目录", "目 录", "内容", "內容",
    # Japanese / Hanja
    "目次", "目 次",
    # English
    "Contents", "Table of Contents", "TABLE OF CONTENTS", "CONTENTS",
]

CONTINUATION_MARKERS = [
    "목차(계속)", "목차 (계속)", "(계속)",
    "目录(续)", "目录 (续)", "(续)", "续表",
    "目次(続)", "目次 (続)", "(続)",
    "(continued)", "(Continued)", "(CONTINUED)", "continued",
]

# "Title ..... 12", "Title … 12", "Title 12"
PAGE_NUMBER_PATTERN = re.compile(r"\.{2,}\s*\d+\s*$|…+\s*\d+\s*$|\s+\d+\s*$")
NUMERIC_CELL_PATTERN = re.compile(r"^\d+$")

DOCUMENT_INDEX_LABEL = "document_index"


@dataclass
class _Candidate:
    result: TocAreaResult
    score: int


def _contains_any(text: str, needles: Sequence[str]) -> bool:
    normalized = text.strip().lower()
    return any(needle.lower() in normalized for needle in needles)


class TocFinder:
    """
    Locates the TOC area

    Args:
        resolver: RefResolver over the same document
        max_search_pages: Only the first N pages are searched
        additional_keywords: Extra TOC heading keywords
    """

    def __init__(
        self,
        resolver: RefResolver,
        max_search_pages: int = 10,
        additional_keywords: Optional[List[str]] = None,
    ):
        self.resolver = resolver
        self.max_search_pages = max_search_pages
        self.keywords = TOC_KEYWORDS + list(additional_keywords or [])

    def find(self, doc: DoclingDocument) -> TocAreaResult:
        """
        Find the TOC area

        Raises:
            TocNotFoundError: neither keyword nor structure search found a candidate
        """
        logger.info("[TocFinder] Starting TOC search...")

        result = self.find_by_keywords(doc)
        if result:
            logger.info(f"[TocFinder] Found TOC by keyword search: pages {result.start_page}-{result.end_page}")
            return result

        result = self.find_by_structure(doc)
        if result:
            logger.info(f"[TocFinder] Found TOC by structure analysis: pages {result.start_page}-{result.end_page}")
            return result

        logger.warning("[TocFinder] No TOC found in document")
        raise TocNotFoundError()

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    def find_by_keywords(self, doc: DoclingDocument) -> Optional[TocAreaResult]:
        for text in doc.texts:
            if not _contains_any(text.text, self.keywords):
                continue

            page_no = text.page_no
            if page_no is None or page_no > self.max_search_pages:
                continue

            logger.info(f'[TocFinder] Found TOC keyword "{text.text}" on page {page_no}')

            if text.parent is None:
                return TocAreaResult(item_refs=[text.self_ref], start_page=page_no, end_page=page_no)

            container = self._find_container(text.parent.ref, page_no)
            if container:
                return self.expand_to_consecutive_pages(container, doc)

        return None

    def _find_container(self, parent_ref: str, page_no: int) -> Optional[TocAreaResult]:
        """Walk up the parent chain to the nearest group or table"""
        visited = set()
        ref: Optional[str] = parent_ref
        while ref and ref not in visited:
            visited.add(ref)

            group = self.resolver.resolve_group(ref)
            if group:
                return TocAreaResult(item_refs=[group.self_ref], start_page=page_no, end_page=page_no)

            table = self.resolver.resolve_table(ref)
            if table:
                return TocAreaResult(item_refs=[table.self_ref], start_page=page_no, end_page=page_no)

            node = self.resolver.resolve(ref)
            ref = node.parent.ref if node is not None and node.parent is not None else None

        return None

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    def find_by_structure(self, doc: DoclingDocument) -> Optional[TocAreaResult]:
        candidates: List[_Candidate] = []

        for group in doc.groups:
            page_no = self.group_first_page(group)
            if page_no is None or page_no > self.max_search_pages:
                continue
            if self.is_group_toc_like(group):
                candidates.append(_Candidate(
                    result=TocAreaResult(item_refs=[group.self_ref], start_page=page_no, end_page=page_no),
                    score=self.group_score(group, page_no),
                ))

        for table in doc.tables:
            page_no = table.page_no
            if page_no is None or page_no > self.max_search_pages:
                continue
            if self.is_table_toc_like(table):
                candidates.append(_Candidate(
                    result=TocAreaResult(item_refs=[table.self_ref], start_page=page_no, end_page=page_no),
                    score=self.table_score(table, page_no),
                ))

        if not candidates:
            return None

        # Stable sort keeps document order among equal scores
        best = sorted(candidates, key=lambda c: c.score, reverse=True)[0]
        logger.debug(f"[TocFinder] Best structural candidate {best.result.item_refs[0]} (score {best.score})")
        return self.expand_to_consecutive_pages(best.result, doc)

    def _page_number_children(self, group: DoclingGroupItem):
        children = [c for c in self.resolver.resolve_many(group.children) if c is not None]
        matching = [
            c for c in children
            if isinstance(c, DoclingTextItem) and PAGE_NUMBER_PATTERN.search(c.text)
        ]
        return children, matching

    def is_group_toc_like(self, group: DoclingGroupItem) -> bool:
        """At least 3 children, or more than half of them, end with a page number"""
        if group.name not in ("list", "group"):
            return False
        children, matching = self._page_number_children(group)
        total = len(children)
        return len(matching) >= 3 or (total > 0 and len(matching) / total > 0.5)

    @staticmethod
    def is_table_toc_like(table: DoclingTableItem) -> bool:
        """document_index label, or a >=3x2 table whose data rows mostly end in a number"""
        if table.label == DOCUMENT_INDEX_LABEL:
            return True

        data = table.data
        if data.num_rows < 3 or data.num_cols < 2:
            return False

        number_count = 0
        for row in data.grid[1:]:
            if len(row) >= data.num_cols and NUMERIC_CELL_PATTERN.match(row[data.num_cols - 1].text.strip()):
                number_count += 1

        return number_count > 0 and number_count / (data.num_rows - 1) > 0.5

    def group_score(self, group: DoclingGroupItem, page_no: int) -> int:
        _, matching = self._page_number_children(group)
        return (self.max_search_pages - page_no + 1) * 10 + len(group.children) * 2 + 5 * len(matching)

    def table_score(self, table: DoclingTableItem, page_no: int) -> int:
        score = (self.max_search_pages - page_no + 1) * 10 + table.data.num_rows * 2
        if table.label == DOCUMENT_INDEX_LABEL:
            score += 50
        return score

    def group_first_page(self, group: DoclingGroupItem) -> Optional[int]:
        """Page of the first child that carries provenance"""
        for child_ref in group.children:
            child = self.resolver.resolve(child_ref.ref)
            prov = getattr(child, "prov", None)
            if prov:
                return prov[0].page_no
        return None

    # ------------------------------------------------------------------
    # Expansion
    # ------------------------------------------------------------------

    def expand_to_consecutive_pages(self, initial: TocAreaResult, doc: DoclingDocument) -> TocAreaResult:
        item_refs = list(initial.item_refs)
        seen = set(item_refs)
        start_page = initial.start_page
        end_page = initial.end_page

        for page_no in range(initial.start_page - 1, 0, -1):
            found = self.find_continuation_on_page(doc, page_no)
            if not found:
                break
            new_refs = [ref for ref in found if ref not in seen]
            seen.update(new_refs)
            item_refs = new_refs + item_refs
            start_page = page_no
            logger.info(f"[TocFinder] Expanded TOC backward to page {page_no}")

        for page_no in range(initial.end_page + 1, self.max_search_pages + 1):
            found = self.find_continuation_on_page(doc, page_no)
            if not found:
                break
            new_refs = [ref for ref in found if ref not in seen]
            seen.update(new_refs)
            item_refs.extend(new_refs)
            end_page = page_no
            logger.info(f"[TocFinder] Expanded TOC forward to page {page_no}")

        return TocAreaResult(item_refs=item_refs, start_page=start_page, end_page=end_page)

    def find_continuation_on_page(self, doc: DoclingDocument, page_no: int) -> List[str]:
        refs: List[str] = []

        for text in doc.texts:
            if text.page_no != page_no or not _contains_any(text.text, CONTINUATION_MARKERS):
                continue
            if text.parent is not None:
                group = self.resolver.resolve_group(text.parent.ref)
                if group and group.self_ref not in refs:
                    refs.append(group.self_ref)

        for group in doc.groups:
            if self.group_first_page(group) != page_no:
                continue
            if group.self_ref not in refs and self.is_group_toc_like(group):
                refs.append(group.self_ref)

        for table in doc.tables:
            if table.page_no != page_no:
                continue
            if table.self_ref not in refs and self.is_table_toc_like(table):
                refs.append(table.self_ref)

        return refs
