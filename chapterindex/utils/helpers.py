"""
Utility Helpers - JSON parsing and batch processing
"""
import asyncio
import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def extract_json(content: str) -> Optional[Dict[str, Any]]:
    """
    Extract a JSON object from an LLM response

    Handles markdown code blocks, surrounding prose and trailing commas.
    Returns None when nothing parseable is found.
    """
    if not content:
        return None

    content = content.strip()
    try:
        parsed = json.loads(content)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    # Find ```json ... ``` or ``` ... ```
    fence = re.search(r"```(?:json)?\s*(.*?)```", content, re.DOTALL)
    if fence:
        json_str = fence.group(1).strip()
    else:
        start = content.find("{")
        end = content.rfind("}")
        if start == -1 or end <= start:
            return None
        json_str = content[start:end + 1]

    # Remove trailing commas
    json_str = re.sub(r",\s*([}\]])", r"\1", json_str)

    try:
        parsed = json.loads(json_str)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def create_batches(items: Sequence[T], batch_size: int) -> List[List[T]]:
    """Split items into consecutive batches of at most batch_size"""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


async def process_batches(
    items: Sequence[T],
    batch_size: int,
    process_fn: Callable[[List[T]], Awaitable[List[R]]],
) -> List[R]:
    """Run process_fn over every batch concurrently and flatten the results"""
    batches = create_batches(items, batch_size)
    results = await asyncio.gather(*(process_fn(batch) for batch in batches))
    return [item for batch_result in results for item in batch_result]


def process_batches_sync(
    items: Sequence[T],
    batch_size: int,
    process_fn: Callable[[List[T]], List[R]],
) -> List[R]:
    """Synchronous counterpart of process_batches"""
    return [item for batch in create_batches(items, batch_size) for item in process_fn(batch)]
