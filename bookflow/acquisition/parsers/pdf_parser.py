import os
import re

import fitz  # pymupdf

from bookflow.acquisition.models import RawBook
from .base import BaseParser
from .txt_parser import _group_paragraphs

_CHAPTER_RE = re.compile(
    r"^\s*(cap[ií]tulo|chapter|parte|part|prologue|pr[oó]logo)\b",
    re.IGNORECASE,
)


class PdfParser(BaseParser):
    """
    Parser para .pdf con PyMuPDF.
    Una página que abre con encabezado de capítulo inicia sección nueva;
    sin encabezados, las páginas se agrupan como párrafos.
    """

    def can_handle(self, file_path: str) -> bool:
        return file_path.lower().endswith(".pdf")

    def parse(self, file_path: str) -> RawBook:
        with fitz.open(file_path) as doc:
            pages = [page.get_text("text").strip() for page in doc]
            title = (doc.metadata or {}).get("title") or ""
            author = (doc.metadata or {}).get("author") or None

        # Páginas casi vacías: portada, números de índice
        pages = [p for p in pages if len(p.split()) >= 5]

        return RawBook(
            title       = title.strip() or os.path.splitext(os.path.basename(file_path))[0],
            source_path = file_path,
            sections    = _sections_from_pages(pages),
            author      = author,
        )


def _sections_from_pages(pages: list[str]) -> list[str]:
    starts = [i for i, p in enumerate(pages) if _CHAPTER_RE.match(p.split("\n", 1)[0])]
    if len(starts) < 2:
        return _group_paragraphs("\n\n".join(pages)) if pages else []

    bounds = [0] + starts[1:] + [len(pages)]
    return ["\n\n".join(pages[a:b]).strip() for a, b in zip(bounds, bounds[1:])]
