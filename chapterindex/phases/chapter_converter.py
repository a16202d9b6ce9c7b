"""
Chapter Converter - builds the chapter tree from TOC entries and places
text blocks, images, tables and footnotes into it by printed page
"""
import logging
import sys
from typing import Dict, List, Optional, Tuple

from ..models import (
    Chapter,
    DoclingTextItem,
    PageRange,
    ProcessedFootnote,
    ProcessedImage,
    ProcessedTable,
    TextBlock,
    TocEntry,
)
from ..utils.id_allocator import IdAllocator
from ..utils.text_cleaner import TextCleaner

logger = logging.getLogger("chapterindex.chapter_converter")

FRONT_MATTER_ID = "ch-000"
FRONT_MATTER_TITLE = "Front Matter"
VALID_TEXT_LABELS = {"text", "section_header", "list_item"}
OPEN_END = sys.maxsize

# chapter id -> (start page, end page), inclusive
ChapterRanges = Dict[str, Tuple[int, int]]


def has_picture_parent(item: DoclingTextItem) -> bool:
    return item.parent is not None and item.parent.ref.startswith("#/pictures/")


def pdf_page_to_actual_page(pdf_page_no: int, page_range_map: Dict[int, PageRange]) -> int:
    """Printed start page of a PDF page; unmapped pages are taken 1:1"""
    page_range = page_range_map.get(pdf_page_no)
    return page_range.start_page_no if page_range else pdf_page_no


def find_chapter_for_page(actual_page_no: int, chapter_ranges: ChapterRanges) -> Optional[str]:
    """Containing chapter with the greatest start page; first one wins ties"""
    best_match = None
    best_start = -1
    for chapter_id, (start, end) in chapter_ranges.items():
        if start <= actual_page_no <= end and start > best_start:
            best_start = start
            best_match = chapter_id
    return best_match


class ChapterConverter:
    def __init__(self, id_allocator: IdAllocator):
        self.id_allocator = id_allocator

    def convert(
        self,
        toc_entries: List[TocEntry],
        text_items: List[DoclingTextItem],
        page_range_map: Dict[int, PageRange],
        images: List[ProcessedImage],
        tables: List[ProcessedTable],
        footnotes: List[ProcessedFootnote],
    ) -> List[Chapter]:
        logger.info("[ChapterConverter] Starting chapter conversion...")

        front_matter = Chapter(
            id=FRONT_MATTER_ID,
            origin_title=FRONT_MATTER_TITLE,
            title=FRONT_MATTER_TITLE,
            page_no=1,
            level=1,
        )
        toc_chapters = self.build_chapter_tree(toc_entries)
        logger.info(f"[ChapterConverter] Built {len(toc_chapters)} TOC chapters + Front Matter")

        chapters = [front_matter] + toc_chapters
        chapter_map = self._build_chapter_map(chapters)

        chapter_ranges = self.calculate_page_ranges(toc_chapters, toc_entries)
        logger.info(f"[ChapterConverter] Calculated ranges for {len(chapter_ranges)} chapters")

        text_blocks = self.convert_text_blocks(text_items)
        for block in text_blocks:
            chapter = self._locate(block.pdf_page_no, chapter_map, chapter_ranges, page_range_map)
            if chapter:
                chapter.text_blocks.append(block)
        logger.info(f"[ChapterConverter] Assigned {len(text_blocks)} text blocks")

        for image in images:
            chapter = self._locate(image.pdf_page_no, chapter_map, chapter_ranges, page_range_map)
            if chapter:
                chapter.image_ids.append(image.id)
        for table in tables:
            chapter = self._locate(table.pdf_page_no, chapter_map, chapter_ranges, page_range_map)
            if chapter:
                chapter.table_ids.append(table.id)
        for footnote in footnotes:
            chapter = self._locate(footnote.pdf_page_no, chapter_map, chapter_ranges, page_range_map)
            if chapter:
                chapter.footnote_ids.append(footnote.id)
        logger.info(
            f"[ChapterConverter] Linked {len(images)} images, {len(tables)} tables, "
            f"and {len(footnotes)} footnotes"
        )

        return chapters

    def build_chapter_tree(self, entries: List[TocEntry]) -> List[Chapter]:
        chapters = []
        for entry in entries:
            chapter = Chapter(
                id=self.id_allocator.chapter_id(),
                origin_title=entry.title,
                title=TextCleaner.normalize(entry.title),
                page_no=entry.page_no,
                level=entry.level,
            )
            chapter.children = self.build_chapter_tree(entry.children)
            chapters.append(chapter)
        return chapters

    @staticmethod
    def calculate_page_ranges(toc_chapters: List[Chapter], toc_entries: List[TocEntry]) -> ChapterRanges:
        """
        Front matter covers 1..first TOC page - 1; every TOC chapter ends
        where the next one (by page) starts, the last one is open-ended
        """
        first_toc_page = min((e.page_no for e in toc_entries), default=OPEN_END)
        ranges: ChapterRanges = {FRONT_MATTER_ID: (1, first_toc_page - 1)}

        flat = sorted(ChapterConverter._flatten(toc_chapters), key=lambda c: c.page_no)
        for i, chapter in enumerate(flat):
            end = flat[i + 1].page_no - 1 if i + 1 < len(flat) else OPEN_END
            ranges[chapter.id] = (chapter.page_no, end)
        return ranges

    @staticmethod
    def convert_text_blocks(text_items: List[DoclingTextItem]) -> List[TextBlock]:
        return [
            TextBlock(text=TextCleaner.normalize(item.text), pdf_page_no=item.page_no or 1)
            for item in text_items
            if item.label in VALID_TEXT_LABELS
            and not has_picture_parent(item)
            and TextCleaner.is_valid_text(item.text)
        ]

    @staticmethod
    def _locate(pdf_page_no: int, chapter_map: Dict[str, Chapter], chapter_ranges: ChapterRanges,
                page_range_map: Dict[int, PageRange]) -> Optional[Chapter]:
        actual = pdf_page_to_actual_page(pdf_page_no, page_range_map)
        chapter_id = find_chapter_for_page(actual, chapter_ranges)
        return chapter_map.get(chapter_id) if chapter_id else None

    @staticmethod
    def _flatten(chapters: List[Chapter]) -> List[Chapter]:
        flat = []
        for chapter in chapters:
            flat.append(chapter)
            flat.extend(ChapterConverter._flatten(chapter.children))
        return flat

    @staticmethod
    def _build_chapter_map(chapters: List[Chapter]) -> Dict[str, Chapter]:
        return {chapter.id: chapter for chapter in ChapterConverter._flatten(chapters)}
