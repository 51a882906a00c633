import logging
import os

import ebooklib
from bs4 import BeautifulSoup
from ebooklib import epub

from bookflow.acquisition.models import RawBook
from .base import BaseParser

logger = logging.getLogger(__name__)

_MIN_SECTION_WORDS = 50   # portadas, copyright e índices quedan fuera


class EpubParser(BaseParser):
    """
    Parser para .epub: cada documento del spine es un capítulo.
    El HTML se limpia con BeautifulSoup conservando los saltos de párrafo.
    """

    def can_handle(self, file_path: str) -> bool:
        return file_path.lower().endswith(".epub")

    def parse(self, file_path: str) -> RawBook:
        book = epub.read_epub(file_path, options={"ignore_ncx": True})

        sections = []
        for item in book.get_items_of_type(ebooklib.ITEM_DOCUMENT):
            text = _html_to_text(item.get_content())
            if len(text.split()) < _MIN_SECTION_WORDS:
                logger.debug("EPUB: descartado %s (relleno)", item.get_name())
                continue
            sections.append(text)

        return RawBook(
            title             = _first_meta(book, "title") or os.path.splitext(os.path.basename(file_path))[0],
            source_path       = file_path,
            sections          = sections,
            detected_language = (_first_meta(book, "language") or "").lower() or None,
            author            = _first_meta(book, "creator"),
        )


def _first_meta(book: epub.EpubBook, name: str) -> str | None:
    values = book.get_metadata("DC", name)
    if values and values[0][0]:
        return str(values[0][0]).strip()
    return None


def _html_to_text(html: bytes) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav"]):
        tag.decompose()

    blocks = [
        el.get_text(" ", strip=True)
        for el in soup.find_all(["h1", "h2", "h3", "h4", "p", "li", "blockquote"])
    ]
    blocks = [b for b in blocks if b]
    if not blocks:
        return soup.get_text("\n", strip=True)
    return "\n\n".join(blocks)
