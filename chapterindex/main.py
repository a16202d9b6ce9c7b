"""
chapterindex - Main Entry Point

Turns a docling document into a chapter-organized document:
1. Text normalization
2. Page range resolution (PDF page -> printed page)
3. TOC extraction (rule-based locate, vision fallback, structured extraction)
4. Image/table/footnote conversion with caption parsing
5. Chapter assembly
"""
import asyncio
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from dotenv import load_dotenv

from .core.completion import CompletionService, ModelBinding
from .core.llm_client import LLMClient
from .core.usage import TokenUsageAggregator
from .models import (
    Caption,
    CaptionRef,
    Chapter,
    DoclingDocument,
    PageRange,
    ProcessedFootnote,
    ProcessedImage,
    ProcessedTable,
    ProcessedTableCell,
    ProcessingResult,
    RefItem,
    TocEntry,
)
from .phases.caption_parser import CaptionParser
from .phases.caption_pipeline import CaptionPipeline
from .phases.caption_validator import CaptionValidator
from .phases.chapter_converter import ChapterConverter
from .phases.page_range_parser import PageRangeParser
from .phases.toc_content_validator import TocContentValidator
from .phases.toc_extractor import TocExtractionResult, TocExtractor
from .phases.toc_finder import TocFinder
from .phases.vision_toc_extractor import VisionTocExtractor
from .utils.errors import AbortError, TocNotFoundError, TocValidationError
from .utils.id_allocator import IdAllocator
from .utils.logger_utils import close_report_logger, create_report_logger, setup_console_logging
from .utils.markdown_converter import MarkdownConverter
from .utils.ref_resolver import RefResolver
from .utils.text_cleaner import TextCleaner

load_dotenv()

DOT_LEADER_PAGE_PATTERN = re.compile(r"\.{2,}\s*(\d+)")
TABLE_LAST_CELL_PAGE_PATTERN = re.compile(r"\|\s*(\d+)\s*\|\s*$", re.MULTILINE)

TokenUsageCallback = Callable[[Dict[str, Any]], None]


@dataclass
class ProcessingOptions:
    """Configuration options for chapterindex"""
    fallback_model: str
    provider: str = "openai"
    # Per-stage models, fallback_model when unset
    page_range_parser_model: Optional[str] = None
    toc_extractor_model: Optional[str] = None
    validator_model: Optional[str] = None
    vision_toc_extractor_model: Optional[str] = None
    caption_parser_model: Optional[str] = None
    text_cleaner_batch_size: int = 20
    caption_parser_batch_size: int = 10
    caption_validator_batch_size: int = 10  # 0 skips caption validation
    max_retries: int = 3
    enable_fallback_retry: bool = False
    toc_max_search_pages: int = 10
    toc_additional_keywords: List[str] = field(default_factory=list)
    vision_first_batch_size: int = 10
    vision_second_batch_size: int = 10
    confidence_threshold: float = 0.7
    debug: bool = False
    log_dir: str = "debug_logs"
    file_logging: bool = True

    def resolve(self) -> "ResolvedConfig":
        fallback = self.fallback_model if self.enable_fallback_retry else None

        def bind(model: Optional[str]) -> ModelBinding:
            return ModelBinding(primary=model or self.fallback_model, fallback=fallback)

        return ResolvedConfig(
            page_range_parser=bind(self.page_range_parser_model),
            toc_extractor=bind(self.toc_extractor_model),
            validator=bind(self.validator_model),
            vision_toc_extractor=bind(self.vision_toc_extractor_model),
            caption_parser=bind(self.caption_parser_model),
            fallback_model=self.fallback_model,
        )


@dataclass(frozen=True)
class ResolvedConfig:
    """One primary/fallback binding per stage"""
    page_range_parser: ModelBinding
    toc_extractor: ModelBinding
    validator: ModelBinding
    vision_toc_extractor: ModelBinding
    caption_parser: ModelBinding
    fallback_model: str


def extract_max_page_number(markdown: str) -> int:
    """Largest page number in dot-leader lines or table last cells, 0 when none"""
    numbers = [int(m) for m in DOT_LEADER_PAGE_PATTERN.findall(markdown)]
    numbers += [int(m) for m in TABLE_LAST_CELL_PAGE_PATTERN.findall(markdown)]
    return max(numbers, default=0)


def effective_total_pages(markdown: str, total_pages: int) -> Optional[int]:
    """None (no upper bound) for compiled volumes whose TOC exceeds the page count"""
    return None if extract_max_page_number(markdown) > total_pages else total_pages


class DocumentProcessor:
    """
    Orchestrates one document processing run

    Args:
        options: ProcessingOptions
        completion: CompletionService, built from an LLMClient when omitted
        cancel_event: Set to request cancellation; abort() does the same
        on_token_usage: Called with the cumulative usage report after
            page-range, TOC and resource stages
    """

    def __init__(
        self,
        options: ProcessingOptions,
        completion: Optional[CompletionService] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_token_usage: Optional[TokenUsageCallback] = None,
    ):
        self.opt = options
        self.config = options.resolve()
        self.cancel_event = cancel_event or asyncio.Event()
        self.on_token_usage = on_token_usage
        self._client: Optional[LLMClient] = None

        if completion is None:
            self._client = LLMClient(provider=options.provider, model=options.fallback_model, debug=options.debug)
            completion = CompletionService(self._client, cancel_event=self.cancel_event)
        elif completion.cancel_event is None:
            completion.cancel_event = self.cancel_event
        self.completion = completion

        self.usage_aggregator = TokenUsageAggregator()
        self.id_allocator = IdAllocator()
        self.logger = logging.getLogger("chapterindex")

        self.resolver: Optional[RefResolver] = None
        self.page_range_parser: Optional[PageRangeParser] = None
        self.toc_finder: Optional[TocFinder] = None
        self.toc_extractor: Optional[TocExtractor] = None
        self.toc_content_validator: Optional[TocContentValidator] = None
        self.vision_toc_extractor: Optional[VisionTocExtractor] = None
        self.caption_pipeline: Optional[CaptionPipeline] = None
        self.chapter_converter: Optional[ChapterConverter] = None

    async def close(self):
        if self._client:
            await self._client.close()

    def abort(self):
        """Request cancellation; observed at the next stage boundary"""
        self.cancel_event.set()

    def _check_aborted(self):
        if self.cancel_event.is_set():
            raise AbortError()

    def _emit_token_usage(self):
        if self.on_token_usage:
            self.on_token_usage(self.usage_aggregator.get_report())

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def process(
        self,
        document: Union[DoclingDocument, Dict[str, Any]],
        report_id: str,
        output_path: str,
    ) -> ProcessingResult:
        """
        Process a docling document

        Args:
            document: DoclingDocument or its JSON dict
            report_id: Report identifier, also names the log file
            output_path: Directory holding pages/ and images/

        Raises:
            AbortError: cancellation requested
            TocNotFoundError: no strategy established a TOC
        """
        doc = document if isinstance(document, DoclingDocument) else DoclingDocument.model_validate(document)

        if not self.opt.file_logging:
            return await self._process(doc, report_id, output_path)

        self.logger = create_report_logger(report_id, self.opt.log_dir)
        try:
            return await self._process(doc, report_id, output_path)
        finally:
            close_report_logger(report_id)

    async def _process(self, doc: DoclingDocument, report_id: str, output_path: str) -> ProcessingResult:
        self.logger.info("[DocumentProcessor] Starting document processing...")
        self.logger.info(f"[DocumentProcessor] Report ID: {report_id}")

        self.usage_aggregator.reset()
        self.id_allocator = IdAllocator()
        self._check_aborted()

        self._initialize_processors(doc, output_path)

        self._normalize_and_filter_texts(doc)
        self._check_aborted()

        page_range_map = await self._parse_page_ranges(doc)
        self._emit_token_usage()
        self._check_aborted()

        toc_entries = await self.extract_table_of_contents(doc)
        self._emit_token_usage()
        self._check_aborted()

        images, tables, footnotes = await self._convert_resources(doc, output_path)
        self._emit_token_usage()
        self._check_aborted()

        chapters = self._convert_chapters(doc, toc_entries, page_range_map, images, tables, footnotes)

        result = ProcessingResult(
            report_id=report_id,
            chapters=chapters,
            images=images,
            tables=tables,
            footnotes=footnotes,
            page_range_map=page_range_map,
            usage=self.usage_aggregator.get_report(),
        )
        self.logger.info(
            f"[DocumentProcessor] Assembled document with {len(chapters)} chapters, {len(images)} images, "
            f"{len(tables)} tables, {len(footnotes)} footnotes"
        )
        self.usage_aggregator.log_summary(self.logger)
        self.logger.info("[DocumentProcessor] Document processing completed")
        return result

    def _initialize_processors(self, doc: DoclingDocument, output_path: str):
        self.logger.info("[DocumentProcessor] Initializing processors...")
        cfg = self.config
        opt = self.opt

        self.resolver = RefResolver(doc)
        self.page_range_parser = PageRangeParser(
            self.completion, cfg.page_range_parser, output_path,
            max_retries=opt.max_retries, aggregator=self.usage_aggregator,
        )
        self.toc_finder = TocFinder(
            self.resolver,
            max_search_pages=opt.toc_max_search_pages,
            additional_keywords=opt.toc_additional_keywords,
        )
        self.toc_extractor = TocExtractor(self.completion, cfg.toc_extractor, max_retries=opt.max_retries)
        self.toc_content_validator = TocContentValidator(
            self.completion, cfg.validator,
            confidence_threshold=opt.confidence_threshold,
            max_retries=opt.max_retries,
            aggregator=self.usage_aggregator,
        )
        self.vision_toc_extractor = VisionTocExtractor(
            self.completion, cfg.vision_toc_extractor, output_path,
            first_batch_size=opt.vision_first_batch_size,
            second_batch_size=opt.vision_second_batch_size,
            max_retries=opt.max_retries,
            aggregator=self.usage_aggregator,
        )
        self.caption_pipeline = CaptionPipeline(
            parser=CaptionParser(
                self.completion, cfg.caption_parser,
                max_retries=opt.max_retries, aggregator=self.usage_aggregator,
            ),
            validator=CaptionValidator(
                self.completion, cfg.validator,
                max_retries=opt.max_retries, aggregator=self.usage_aggregator,
            ),
            completion=self.completion,
            fallback_model=cfg.fallback_model,
            enable_fallback_retry=opt.enable_fallback_retry,
            parser_batch_size=opt.caption_parser_batch_size,
            validator_batch_size=opt.caption_validator_batch_size,
            max_retries=opt.max_retries,
            aggregator=self.usage_aggregator,
        )
        self.chapter_converter = ChapterConverter(self.id_allocator)
        self.logger.info("[DocumentProcessor] All processors initialized")

    def _normalize_and_filter_texts(self, doc: DoclingDocument):
        """Reports how many texts survive cleaning; the TOC search works on the document items"""
        texts = [item.text for item in doc.texts]
        filtered = TextCleaner.normalize_and_filter_batch(texts, self.opt.text_cleaner_batch_size)
        self.logger.info(
            f"[DocumentProcessor] Filtered {len(filtered)} texts from {len(texts)} original texts"
        )

    async def _parse_page_ranges(self, doc: DoclingDocument) -> Dict[int, PageRange]:
        self.logger.info("[DocumentProcessor] Starting page range parsing...")
        page_range_map, _ = await self.page_range_parser.parse(doc)
        self.logger.info(f"[DocumentProcessor] Page range map entries: {len(page_range_map)}")
        return page_range_map

    # ------------------------------------------------------------------
    # TOC
    # ------------------------------------------------------------------

    async def extract_table_of_contents(self, doc: DoclingDocument) -> List[TocEntry]:
        self.logger.info("[DocumentProcessor] Extracting TOC...")
        total_pages = len(doc.pages)

        markdown = await self._locate_toc_markdown(doc)

        from_vision = False
        if not markdown:
            from_vision = True
            self.logger.info("[DocumentProcessor] Using vision fallback for TOC")
            markdown = await self.vision_toc_extractor.extract(total_pages)
            if not markdown:
                reason = "Both rule-based search and vision fallback failed to locate TOC"
                self.logger.error(f"[DocumentProcessor] TOC extraction failed: {reason}")
                raise TocNotFoundError(f"Table of contents not found in the document. {reason}.")
            self.logger.info(f"[DocumentProcessor] Vision extracted TOC markdown ({len(markdown)} chars)")

        try:
            toc_result = await self.toc_extractor.extract(markdown, effective_total_pages(markdown, total_pages))
        except TocValidationError as e:
            self.logger.warning(f"[DocumentProcessor] TOC extraction validation failed: {e}")
            toc_result = TocExtractionResult(entries=[], usages=[])
        self.usage_aggregator.track_many(toc_result.usages)

        if not toc_result.entries and not from_vision:
            self.logger.warning(
                "[DocumentProcessor] Text-based TOC extraction yielded 0 entries, retrying with vision"
            )
            vision_result = await self._retry_with_vision(total_pages)
            if vision_result and vision_result.entries:
                toc_result = vision_result

        if not toc_result.entries:
            reason = "TOC area was detected but LLM could not extract any structured entries"
            self.logger.error(f"[DocumentProcessor] TOC extraction failed: {reason}")
            raise TocNotFoundError(f"{reason}.")

        self.logger.info(f"[DocumentProcessor] Extracted {len(toc_result.entries)} top-level TOC entries")
        return toc_result.entries

    async def _locate_toc_markdown(self, doc: DoclingDocument) -> Optional[str]:
        """Rule-based locate + plausibility check; None sends the caller to vision"""
        try:
            area = self.toc_finder.find(doc)
        except TocNotFoundError:
            self.logger.info("[DocumentProcessor] Rule-based TOC not found, will try vision fallback")
            return None

        self.logger.info(f"[DocumentProcessor] Found TOC area: pages {area.start_page}-{area.end_page}")
        markdown = MarkdownConverter.convert(area.item_refs, self.resolver)
        self.logger.info(f"[DocumentProcessor] Converted TOC to Markdown ({len(markdown)} chars)")

        validation = await self.toc_content_validator.validate(markdown)
        if not self.toc_content_validator.is_valid(validation):
            self.logger.warning(f"[DocumentProcessor] TOC validation failed: {validation.reason}")
            return None

        valid_markdown = validation.valid_toc_markdown
        if not valid_markdown:
            return None
        if validation.content_type == "mixed":
            self.logger.info(
                f"[DocumentProcessor] Mixed TOC detected, using extracted main TOC ({len(valid_markdown)} chars)"
            )
        self.logger.info(f"[DocumentProcessor] TOC validation passed (confidence: {validation.confidence})")
        return valid_markdown

    async def _retry_with_vision(self, total_pages: int) -> Optional[TocExtractionResult]:
        markdown = await self.vision_toc_extractor.extract(total_pages)
        if not markdown:
            return None
        self.logger.info(f"[DocumentProcessor] Vision extracted TOC markdown ({len(markdown)} chars)")
        try:
            result = await self.toc_extractor.extract(markdown, effective_total_pages(markdown, total_pages))
        except Exception as e:
            self.logger.warning(f"[DocumentProcessor] Vision retry failed: {e}")
            return None
        self.usage_aggregator.track_many(result.usages)
        return result

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def _convert_resources(
        self, doc: DoclingDocument, output_path: str
    ) -> Tuple[List[ProcessedImage], List[ProcessedTable], List[ProcessedFootnote]]:
        self.logger.info("[DocumentProcessor] Converting images, tables, and footnotes...")
        images, tables = await asyncio.gather(
            self._convert_images(doc, output_path),
            self._convert_tables(doc),
        )
        footnotes = self._convert_footnotes(doc)
        self.logger.info(
            f"[DocumentProcessor] Converted {len(images)} images, {len(tables)} tables, "
            f"and {len(footnotes)} footnotes"
        )
        return images, tables, footnotes

    def extract_caption_text(self, captions: List[CaptionRef]) -> Optional[str]:
        """First caption as text: literal string or resolved text reference"""
        if not captions:
            return None
        first = captions[0]
        if isinstance(first, str):
            return first or None
        if isinstance(first, RefItem):
            resolved = self.resolver.resolve_text(first.ref)
            return resolved.text if resolved else None
        return None

    async def _convert_images(self, doc: DoclingDocument, output_path: str) -> List[ProcessedImage]:
        self.logger.info(f"[DocumentProcessor] Converting {len(doc.pictures)} images...")
        images = []
        caption_texts = []
        for i, picture in enumerate(doc.pictures):
            images.append(ProcessedImage(
                id=self.id_allocator.image_id(),
                path=f"{output_path}/images/image_{i}.png",
                pdf_page_no=picture.page_no or 0,
            ))
            caption_texts.append(self.extract_caption_text(picture.captions))

        captions = await self.caption_pipeline.process(caption_texts, "image")
        self._assign_captions(images, captions)
        return images

    async def _convert_tables(self, doc: DoclingDocument) -> List[ProcessedTable]:
        self.logger.info(f"[DocumentProcessor] Converting {len(doc.tables)} tables...")
        tables = []
        caption_texts = []
        for table in doc.tables:
            grid = [
                [
                    ProcessedTableCell(
                        text=cell.text,
                        row_span=cell.row_span or 1,
                        col_span=cell.col_span or 1,
                        is_header=cell.column_header or cell.row_header,
                    )
                    for cell in row
                ]
                for row in table.data.grid
            ]
            tables.append(ProcessedTable(
                id=self.id_allocator.table_id(),
                pdf_page_no=table.page_no or 0,
                num_rows=len(grid),
                num_cols=len(grid[0]) if grid else 0,
                grid=grid,
            ))
            caption_texts.append(self.extract_caption_text(table.captions))

        captions = await self.caption_pipeline.process(caption_texts, "table")
        self._assign_captions(tables, captions)
        return tables

    @staticmethod
    def _assign_captions(resources, captions: Dict[int, Caption]):
        for index, caption in captions.items():
            resources[index].caption = caption

    def _convert_footnotes(self, doc: DoclingDocument) -> List[ProcessedFootnote]:
        items = [item for item in doc.texts if item.label == "footnote"]
        self.logger.info(f"[DocumentProcessor] Converting {len(items)} footnotes...")
        footnotes = [
            ProcessedFootnote(
                id=self.id_allocator.footnote_id(),
                text=TextCleaner.normalize(item.text),
                pdf_page_no=item.page_no or 1,
            )
            for item in items
            if TextCleaner.is_valid_text(item.text)
        ]
        self.logger.info(f"[DocumentProcessor] Converted {len(footnotes)} valid footnotes")
        return footnotes

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    def _convert_chapters(
        self,
        doc: DoclingDocument,
        toc_entries: List[TocEntry],
        page_range_map: Dict[int, PageRange],
        images: List[ProcessedImage],
        tables: List[ProcessedTable],
        footnotes: List[ProcessedFootnote],
    ) -> List[Chapter]:
        self.logger.info("[DocumentProcessor] Converting chapters...")
        if not toc_entries:
            reason = "Cannot convert chapters without TOC entries"
            self.logger.error(f"[DocumentProcessor] {reason}")
            raise TocNotFoundError(reason)

        chapters = self.chapter_converter.convert(
            toc_entries, doc.texts, page_range_map, images, tables, footnotes
        )
        self.logger.info(f"[DocumentProcessor] Converted {len(chapters)} top-level chapters")
        return chapters


async def main():
    """CLI entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="chapterindex - Chapter structure extractor for docling documents")
    parser.add_argument("docling_json", help="Path to docling JSON document")
    parser.add_argument("--output-path", required=True,
                        help="Directory containing pages/ and images/ of the document")
    parser.add_argument("--report-id", help="Report identifier (default: JSON file name)")
    parser.add_argument("--fallback-model", required=True, help="Model used when a stage has no own model")
    parser.add_argument("--provider", default="openai",
                        choices=["openai", "deepseek", "openrouter", "gemini", "zhipu"],
                        help="LLM provider")
    parser.add_argument("--toc-extractor-model", help="Model for structured TOC extraction")
    parser.add_argument("--vision-model", help="Model for page range parsing and vision TOC search")
    parser.add_argument("--validator-model", help="Model for TOC content and caption validation")
    parser.add_argument("--caption-parser-model", help="Model for caption parsing")
    parser.add_argument("--max-retries", type=int, default=3, help="Transport retries per call")
    parser.add_argument("--enable-fallback-retry", action="store_true",
                        help="Retry failed calls and invalid captions with the fallback model")
    parser.add_argument("--output-dir", default="./results", help="Directory for the result JSON")
    parser.add_argument("--quiet", action="store_true", help="Disable debug output")

    args = parser.parse_args()

    setup_console_logging(debug=not args.quiet)

    report_id = args.report_id or os.path.splitext(os.path.basename(args.docling_json))[0]
    options = ProcessingOptions(
        fallback_model=args.fallback_model,
        provider=args.provider,
        toc_extractor_model=args.toc_extractor_model,
        page_range_parser_model=args.vision_model,
        vision_toc_extractor_model=args.vision_model,
        validator_model=args.validator_model,
        caption_parser_model=args.caption_parser_model,
        max_retries=args.max_retries,
        enable_fallback_retry=args.enable_fallback_retry,
        debug=not args.quiet,
    )

    processor = None
    try:
        with open(args.docling_json, "r", encoding="utf-8") as f:
            document = DoclingDocument.model_validate(json.load(f))

        processor = DocumentProcessor(options)
        result = await processor.process(document, report_id, args.output_path)

        os.makedirs(args.output_dir, exist_ok=True)
        output_file = os.path.join(args.output_dir, f"{report_id}.json")
        with open(output_file, "w", encoding="utf-8") as f:
            f.write(result.model_dump_json(indent=2))

        print(f"Saved: {output_file}")
        if args.quiet:
            print(json.dumps(result.usage["total"], indent=2))
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if processor:
            await processor.close()


def run():
    """Console script entry point"""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    exit(asyncio.run(main()))
