"""
Scripted test doubles and docling document builders
"""
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from chapterindex.core.completion import CompletionResult
from chapterindex.core.llm_client import LLMResponse
from chapterindex.models import DoclingDocument, UsageRecord

# A scripted reply: output dict, exception to raise, or callable(kwargs) -> dict
Reply = Union[Dict[str, Any], Exception, Callable[[Dict[str, Any]], Dict[str, Any]]]


@dataclass
class RecordedCall:
    schema: type
    kwargs: Dict[str, Any]

    @property
    def component(self) -> str:
        return self.kwargs["component"]

    @property
    def phase(self) -> str:
        return self.kwargs["phase"]

    @property
    def prompt(self) -> str:
        if "user_prompt" in self.kwargs:
            return self.kwargs["user_prompt"]
        content = self.kwargs["messages"][-1]["content"]
        return next(part["text"] for part in content if part["type"] == "text")


class FakeCompletion:
    """
    Stands in for CompletionService

    Replies are queued per component and consumed in call order.
    """

    def __init__(self, tokens: int = 10):
        self.cancel_event = None
        self.tokens = tokens
        self.calls: List[RecordedCall] = []
        self._replies: Dict[str, deque] = defaultdict(deque)

    def script(self, component: str, *replies: Reply) -> "FakeCompletion":
        self._replies[component].extend(replies)
        return self

    def calls_for(self, component: str) -> List[RecordedCall]:
        return [c for c in self.calls if c.component == component]

    async def call(self, schema, **kwargs) -> CompletionResult:
        return self._respond(schema, kwargs)

    async def call_vision(self, schema, **kwargs) -> CompletionResult:
        return self._respond(schema, kwargs)

    def _respond(self, schema, kwargs) -> CompletionResult:
        self.calls.append(RecordedCall(schema=schema, kwargs=kwargs))
        queue = self._replies[kwargs["component"]]
        if not queue:
            raise AssertionError(f"No scripted reply left for {kwargs['component']} ({kwargs['phase']})")

        reply = queue.popleft()
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(kwargs)

        return CompletionResult(
            output=schema.model_validate(reply),
            usage=UsageRecord(
                component=kwargs["component"],
                phase=kwargs["phase"],
                model="primary",
                model_name=kwargs["models"].primary,
                input_tokens=self.tokens,
                output_tokens=self.tokens // 2,
                total_tokens=self.tokens + self.tokens // 2,
            ),
            used_fallback=False,
        )


class FakeLLMClient:
    """Stands in for LLMClient; replies are queued per model name"""

    def __init__(self, replies: Dict[str, List[Union[str, Exception]]]):
        self.replies = {model: list(items) for model, items in replies.items()}
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, model=None, temperature=0.1, max_retries=3,
                       max_tokens=None, json_mode=False) -> LLMResponse:
        self.calls.append({"model": model, "messages": messages, "temperature": temperature})
        reply = self.replies[model].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply, model=model, input_tokens=100, output_tokens=20, total_tokens=120)


# ----------------------------------------------------------------------
# Docling builders
# ----------------------------------------------------------------------

def ref(value: str) -> Dict[str, str]:
    return {"$ref": value}


def text_item(index: int, text: str, page_no: Optional[int] = 1, label: str = "text",
              parent: Optional[str] = None, **extra) -> Dict[str, Any]:
    return {
        "self_ref": f"#/texts/{index}",
        "parent": ref(parent) if parent else None,
        "children": [],
        "label": label,
        "prov": [{"page_no": page_no}] if page_no is not None else [],
        "orig": text,
        "text": text,
        **extra,
    }


def group_item(index: int, children: List[str], name: str = "list",
               parent: Optional[str] = None) -> Dict[str, Any]:
    return {
        "self_ref": f"#/groups/{index}",
        "parent": ref(parent) if parent else None,
        "children": [ref(c) for c in children],
        "name": name,
        "label": "list" if name == "list" else "unspecified",
    }


def table_item(index: int, rows: List[List[str]], page_no: int = 1, label: str = "table",
               captions: Optional[list] = None) -> Dict[str, Any]:
    grid = [[{"text": cell} for cell in row] for row in rows]
    return {
        "self_ref": f"#/tables/{index}",
        "label": label,
        "prov": [{"page_no": page_no}],
        "captions": captions or [],
        "data": {"grid": grid, "num_rows": len(rows), "num_cols": len(rows[0]) if rows else 0},
    }


def picture_item(index: int, page_no: int = 1, captions: Optional[list] = None) -> Dict[str, Any]:
    return {
        "self_ref": f"#/pictures/{index}",
        "prov": [{"page_no": page_no}],
        "captions": captions or [],
    }


def page(page_no: int, width: float = 595.0, height: float = 842.0) -> Dict[str, Any]:
    return {
        "page_no": page_no,
        "size": {"width": width, "height": height},
        "image": {"uri": f"pages/page_{page_no - 1}.png", "mimetype": "image/png"},
    }


def make_document(texts=(), groups=(), tables=(), pictures=(), pages=(), page_count: int = 0) -> DoclingDocument:
    all_pages = list(pages) or [page(n) for n in range(1, page_count + 1)]
    return DoclingDocument.model_validate({
        "name": "test",
        "texts": list(texts),
        "groups": list(groups),
        "tables": list(tables),
        "pictures": list(pictures),
        "pages": {str(p["page_no"]): p for p in all_pages},
    })


def write_page_images(output_path, count: int):
    """Create dummy page images pages/page_0.png .. pages/page_{count-1}.png"""
    pages_dir = output_path / "pages"
    pages_dir.mkdir(parents=True, exist_ok=True)
    for i in range(count):
        (pages_dir / f"page_{i}.png").write_bytes(b"\x89PNG\r\n\x1a\n" + bytes([i % 256]))
