"""
Reference resolver - O(1) lookup of docling nodes by self_ref
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, TypeVar, Union

from ..models import (
    DoclingDocument,
    DoclingGroupItem,
    DoclingNode,
    DoclingPictureItem,
    DoclingTableItem,
    DoclingTextItem,
    RefItem,
)

logger = logging.getLogger("chapterindex.ref_resolver")

_REF_PATTERN = re.compile(r"^#/(\w+)/")

N = TypeVar("N")


def _build_index(items: Iterable[N]) -> Dict[str, N]:
    return {item.self_ref: item for item in items}


class RefResolver:
    """Indexes texts, pictures, tables and groups of one document"""

    def __init__(self, doc: DoclingDocument):
        self.texts: Dict[str, DoclingTextItem] = _build_index(doc.texts)
        self.pictures: Dict[str, DoclingPictureItem] = _build_index(doc.pictures)
        self.tables: Dict[str, DoclingTableItem] = _build_index(doc.tables)
        self.groups: Dict[str, DoclingGroupItem] = _build_index(doc.groups)
        self._collections = {
            "texts": self.texts,
            "pictures": self.pictures,
            "tables": self.tables,
            "groups": self.groups,
        }
        logger.info(
            f"[RefResolver] Indexed {len(self.texts)} texts, {len(self.pictures)} pictures, "
            f"{len(self.tables)} tables, {len(self.groups)} groups"
        )

    def resolve(self, ref: str) -> Optional[DoclingNode]:
        """Resolve any reference; logs a warning when it cannot be resolved"""
        match = _REF_PATTERN.match(ref)
        if not match:
            logger.warning(f"[RefResolver] Invalid reference format: {ref}")
            return None

        collection = self._collections.get(match.group(1))
        if collection is None:
            logger.warning(f"[RefResolver] Unknown collection type: {match.group(1)}")
            return None

        node = collection.get(ref)
        if node is None:
            logger.warning(f"[RefResolver] Reference not found: {ref}")
        return node

    def resolve_text(self, ref: str) -> Optional[DoclingTextItem]:
        return self.texts.get(ref)

    def resolve_picture(self, ref: str) -> Optional[DoclingPictureItem]:
        return self.pictures.get(ref)

    def resolve_table(self, ref: str) -> Optional[DoclingTableItem]:
        return self.tables.get(ref)

    def resolve_group(self, ref: str) -> Optional[DoclingGroupItem]:
        return self.groups.get(ref)

    def resolve_many(self, refs: List[Union[RefItem, str]]) -> List[Optional[DoclingNode]]:
        return [self.resolve(ref if isinstance(ref, str) else ref.ref) for ref in refs]
