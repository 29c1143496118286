
import io
from dataclasses import dataclass
from typing import List

from pdfminer.high_level import extract_pages
from pdfminer.layout import LTTextContainer
from pdfminer.psparser import PSException


class ExtractionError(Exception):
    """PDF не удалось разобрать или в нем нет текста"""
    pass


@dataclass
class PageText:
    page_number: int
    text: str


def extract_page_texts(content: bytes) -> List[PageText]:
    """Split a PDF into one text record per page (1-based page numbers)."""
    pages: List[PageText] = []
    try:
        for number, layout in enumerate(extract_pages(io.BytesIO(content)), start=1):
            text = "".join(el.get_text() for el in layout if isinstance(el, LTTextContainer))
            pages.append(PageText(page_number=number, text=text.strip()))
    except PSException as e:
        raise ExtractionError(f"Not a readable PDF: {e}") from e

    if not any(p.text for p in pages):
        raise ExtractionError("Empty text after extraction")
    return pages
