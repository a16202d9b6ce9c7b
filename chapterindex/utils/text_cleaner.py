"""
Text normalization for docling text items
"""
import re
import unicodedata
from typing import List

from .helpers import process_batches_sync

_SPECIAL_WHITESPACE = re.compile(r"[\t\u00A0\u2000-\u200B]")
_LINE_BREAKS = re.compile(r"[\r\n]+")
_MULTI_SPACE = re.compile(r"\s+")
_LEADING_PUNCT = re.compile(r"^[,.:;!?]+\s*")
_TRAILING_PUNCT = re.compile(r"\s+[,.:;!?]*$")
_DIGITS_ONLY = re.compile(r"^\s*[\d\s]*$")


class TextCleaner:
    """Stateless helpers; every method is a staticmethod"""

    @staticmethod
    def normalize(text: str) -> str:
        """NFC, special whitespace to spaces, collapse runs, trim"""
        if not text:
            return ""
        normalized = unicodedata.normalize("NFC", text)
        normalized = _SPECIAL_WHITESPACE.sub(" ", normalized)
        normalized = _LINE_BREAKS.sub(" ", normalized)
        normalized = _MULTI_SPACE.sub(" ", normalized)
        return normalized.strip()

    @staticmethod
    def clean_punctuation(text: str) -> str:
        if not text:
            return ""
        cleaned = _LEADING_PUNCT.sub("", text)
        return _TRAILING_PUNCT.sub("", cleaned)

    @staticmethod
    def is_valid_text(text: str) -> bool:
        """Reject empty text and text made only of digits and spaces"""
        if not text:
            return False
        return not _DIGITS_ONLY.match(TextCleaner.normalize(text))

    @staticmethod
    def normalize_batch(texts: List[str]) -> List[str]:
        return [TextCleaner.normalize(text) for text in texts]

    @staticmethod
    def filter_valid_texts(texts: List[str]) -> List[str]:
        return [text for text in texts if TextCleaner.is_valid_text(text)]

    @staticmethod
    def normalize_and_filter_batch(texts: List[str], batch_size: int = 10) -> List[str]:
        """
        Normalize then drop invalid texts

        batch_size=0 processes one text at a time instead of in batches.
        """
        if batch_size == 0:
            results = []
            for text in texts:
                normalized = TextCleaner.normalize(text)
                if TextCleaner.is_valid_text(normalized):
                    results.append(normalized)
            return results

        return process_batches_sync(
            texts,
            batch_size,
            lambda batch: TextCleaner.filter_valid_texts(TextCleaner.normalize_batch(batch)),
        )
