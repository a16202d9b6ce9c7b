"""
Page/resource image loading for vision calls
"""
import base64
import os
from typing import Any, Dict, List

import aiofiles


def page_image_path(output_path: str, page_no: int) -> str:
    """Page images are 0-indexed on disk: page N lives in pages/page_{N-1}.png"""
    return os.path.join(output_path, "pages", f"page_{page_no - 1}.png")


async def load_image_data_url(path: str, mimetype: str = "image/png") -> str:
    """Read an image file and return it as a base64 data URL"""
    async with aiofiles.open(path, "rb") as f:
        data = await f.read()
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mimetype};base64,{encoded}"


def image_content(data_url: str) -> Dict[str, Any]:
    """OpenAI chat content part for an inline image"""
    return {"type": "image_url", "image_url": {"url": data_url}}


async def load_page_images(output_path: str, start_page: int, end_page: int) -> List[Dict[str, Any]]:
    """Content parts for pages start_page..end_page (inclusive, 1-based)"""
    parts = []
    for page_no in range(start_page, end_page + 1):
        data_url = await load_image_data_url(page_image_path(output_path, page_no))
        parts.append(image_content(data_url))
    return parts
