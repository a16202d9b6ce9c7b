"""
Pydantic data models for chapterindex.

Input side mirrors the docling JSON document; output side is the
chapter-organized document handed to downstream indexing.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


# =============================================================================
# Docling Input Models
# =============================================================================

class RefItem(BaseModel):
    """JSON pointer style reference, e.g. {"$ref": "#/texts/3"}."""

    ref: str = Field(..., alias="$ref", description="Reference to another document node")

    class Config:
        populate_by_name = True


class ProvenanceItem(BaseModel):
    """Where a node was found on the PDF page."""

    page_no: int = Field(..., description="1-based PDF page number")
    bbox: Optional[Dict[str, Any]] = Field(None, description="Bounding box on the page")

    class Config:
        extra = "allow"


class DoclingTextItem(BaseModel):
    """Text block (paragraph, heading, list item, caption, footnote...)."""

    self_ref: str = Field(..., description="Own reference, e.g. #/texts/0")
    parent: Optional[RefItem] = Field(None, description="Parent node reference")
    children: List[RefItem] = Field(default_factory=list)
    label: str = Field("text", description="Docling label (text, section_header, list_item, footnote...)")
    prov: List[ProvenanceItem] = Field(default_factory=list)
    orig: str = Field("", description="Original text before docling cleanup")
    text: str = Field("", description="Extracted text")
    enumerated: Optional[bool] = Field(None, description="List item is enumerated")
    marker: Optional[str] = Field(None, description="Explicit list marker")

    class Config:
        extra = "allow"

    @property
    def page_no(self) -> Optional[int]:
        return self.prov[0].page_no if self.prov else None


class DoclingGroupItem(BaseModel):
    """List or generic group of child nodes."""

    self_ref: str
    parent: Optional[RefItem] = None
    children: List[RefItem] = Field(default_factory=list)
    name: str = Field("group", description="Group kind: list, group, ...")
    label: str = Field("unspecified")

    class Config:
        extra = "allow"


class DoclingTableCell(BaseModel):
    """Single table cell."""

    text: str = ""
    row_span: Optional[int] = None
    col_span: Optional[int] = None
    column_header: bool = False
    row_header: bool = False

    class Config:
        extra = "allow"


class DoclingTableData(BaseModel):
    grid: List[List[DoclingTableCell]] = Field(default_factory=list)
    num_rows: int = 0
    num_cols: int = 0

    class Config:
        extra = "allow"


CaptionRef = Union[str, RefItem]


class DoclingTableItem(BaseModel):
    """Table node; label may be 'document_index' for TOC-like tables."""

    self_ref: str
    parent: Optional[RefItem] = None
    children: List[RefItem] = Field(default_factory=list)
    label: str = "table"
    prov: List[ProvenanceItem] = Field(default_factory=list)
    captions: List[CaptionRef] = Field(default_factory=list)
    data: DoclingTableData = Field(default_factory=DoclingTableData)

    class Config:
        extra = "allow"

    @property
    def page_no(self) -> Optional[int]:
        return self.prov[0].page_no if self.prov else None


class DoclingPictureItem(BaseModel):
    """Picture node."""

    self_ref: str
    parent: Optional[RefItem] = None
    children: List[RefItem] = Field(default_factory=list)
    label: str = "picture"
    prov: List[ProvenanceItem] = Field(default_factory=list)
    captions: List[CaptionRef] = Field(default_factory=list)

    class Config:
        extra = "allow"

    @property
    def page_no(self) -> Optional[int]:
        return self.prov[0].page_no if self.prov else None


class PageSize(BaseModel):
    width: float
    height: float


class PageImage(BaseModel):
    uri: str = Field(..., description="Image path relative to the output directory")
    mimetype: Optional[str] = Field("image/png")

    class Config:
        extra = "allow"


class DoclingPage(BaseModel):
    page_no: int
    size: PageSize
    image: Optional[PageImage] = None

    class Config:
        extra = "allow"


class DoclingDocument(BaseModel):
    """Parsed document produced by docling."""

    name: Optional[str] = None
    texts: List[DoclingTextItem] = Field(default_factory=list)
    groups: List[DoclingGroupItem] = Field(default_factory=list)
    tables: List[DoclingTableItem] = Field(default_factory=list)
    pictures: List[DoclingPictureItem] = Field(default_factory=list)
    pages: Dict[str, DoclingPage] = Field(default_factory=dict)

    class Config:
        extra = "allow"


DoclingNode = Union[DoclingTextItem, DoclingGroupItem, DoclingTableItem, DoclingPictureItem]


# =============================================================================
# TOC Models
# =============================================================================

class TocEntry(BaseModel):
    """One table-of-contents entry; children form the hierarchy."""

    title: str = Field(..., description="Chapter/section title")
    level: int = Field(..., description="Hierarchy depth, 1 for top level")
    page_no: int = Field(..., description="Printed starting page number")
    children: List["TocEntry"] = Field(default_factory=list, description="Nested entries")


class TocAreaResult(BaseModel):
    """Structural nodes believed to render the TOC."""

    item_refs: List[str] = Field(..., description="Node references in reading order")
    start_page: int
    end_page: int


class ValidationIssue(BaseModel):
    code: str = Field(..., description="Rule code V001-V007")
    message: str
    path: str = Field(..., description="Location in the tree, e.g. [0].children[2]")
    entry: TocEntry


class ValidationResult(BaseModel):
    valid: bool
    error_count: int
    issues: List[ValidationIssue] = Field(default_factory=list)


# =============================================================================
# Output Models
# =============================================================================

class Caption(BaseModel):
    full_text: str = Field(..., description="Caption text as found in the document")
    num: Optional[str] = Field(None, description="Prefix + number, e.g. 'Figure 1'")


class PageRange(BaseModel):
    start_page_no: int
    end_page_no: int


class ProcessedImage(BaseModel):
    id: str
    path: str
    pdf_page_no: int
    caption: Optional[Caption] = None


class ProcessedTableCell(BaseModel):
    text: str
    row_span: int = 1
    col_span: int = 1
    is_header: bool = False


class ProcessedTable(BaseModel):
    id: str
    pdf_page_no: int
    num_rows: int
    num_cols: int
    grid: List[List[ProcessedTableCell]] = Field(default_factory=list)
    caption: Optional[Caption] = None


class ProcessedFootnote(BaseModel):
    id: str
    text: str
    pdf_page_no: int


class TextBlock(BaseModel):
    text: str
    pdf_page_no: int


class Chapter(BaseModel):
    id: str
    origin_title: str = Field(..., description="Title exactly as extracted from the TOC")
    title: str = Field(..., description="Normalized title")
    page_no: int
    level: int
    text_blocks: List[TextBlock] = Field(default_factory=list)
    image_ids: List[str] = Field(default_factory=list)
    table_ids: List[str] = Field(default_factory=list)
    footnote_ids: List[str] = Field(default_factory=list)
    children: List["Chapter"] = Field(default_factory=list)


class UsageRecord(BaseModel):
    """Token usage of one completion call."""

    component: str
    phase: str
    model: Literal["primary", "fallback"]
    model_name: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    class Config:
        protected_namespaces = ()


class ProcessingResult(BaseModel):
    report_id: str
    chapters: List[Chapter]
    images: List[ProcessedImage]
    tables: List[ProcessedTable]
    footnotes: List[ProcessedFootnote]
    page_range_map: Dict[int, PageRange]
    usage: Dict[str, Any] = Field(default_factory=dict, description="Token usage report")


TocEntry.model_rebuild()
Chapter.model_rebuild()
