"""
Serialize TOC-area nodes (groups, tables, texts) into markdown
"""
from typing import List, Optional

from ..models import DoclingGroupItem, DoclingTableItem, DoclingTextItem
from .ref_resolver import RefResolver

INDENT = "  "


def _is_group(node) -> bool:
    return isinstance(node, DoclingGroupItem) and node.name in ("list", "group")


def _list_marker(enumerated: Optional[bool], marker: Optional[str]) -> str:
    if marker:
        return f"{marker} "
    if enumerated:
        return "1. "
    return "- "


def _escape_cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ").strip()


class MarkdownConverter:
    """Converts node references into markdown for the LLM stages"""

    @staticmethod
    def convert(refs: List[str], resolver: RefResolver) -> str:
        blocks = []
        for ref in refs:
            node = resolver.resolve(ref)
            if node is None:
                continue

            if _is_group(node):
                block = MarkdownConverter.group_to_markdown(node, resolver, 0)
            elif isinstance(node, DoclingTableItem):
                block = MarkdownConverter.table_to_markdown(node)
            elif isinstance(node, DoclingTextItem):
                block = MarkdownConverter.text_to_markdown(node, 0)
            else:
                block = ""

            if block:
                blocks.append(block)

        return "\n\n".join(blocks)

    @staticmethod
    def group_to_markdown(group: DoclingGroupItem, resolver: RefResolver, indent_level: int = 0) -> str:
        lines = []
        for child_ref in group.children:
            child = resolver.resolve(child_ref.ref)
            if child is None:
                continue
            if _is_group(child):
                nested = MarkdownConverter.group_to_markdown(child, resolver, indent_level + 1)
                if nested:
                    lines.append(nested)
            elif isinstance(child, DoclingTextItem):
                line = MarkdownConverter.text_to_markdown(child, indent_level)
                if line:
                    lines.append(line)
        return "\n".join(lines)

    @staticmethod
    def table_to_markdown(table: DoclingTableItem) -> str:
        lines = []
        for row_idx, row in enumerate(table.data.grid):
            if not row:
                continue
            cells = [_escape_cell(cell.text) for cell in row]
            lines.append(f"| {' | '.join(cells)} |")
            # Header separator after the first row
            if row_idx == 0:
                lines.append(f"| {' | '.join('---' for _ in row)} |")
        return "\n".join(lines)

    @staticmethod
    def text_to_markdown(text: DoclingTextItem, indent_level: int = 0) -> str:
        content = text.text.strip()
        if not content:
            return ""
        return f"{INDENT * indent_level}{_list_marker(text.enumerated, text.marker)}{content}"
