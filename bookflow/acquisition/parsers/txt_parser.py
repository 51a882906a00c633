import os
import re

from bookflow.acquisition.models import RawBook
from .base import BaseParser

# Una línea que abre capítulo: "Chapter 3", "Capítulo IV", "# Título", "***"
_HEADING_RE = re.compile(
    r"""^\s*(
        (chapter|cap[ií]tulo|chapitre|kapitel)\s+[\w]+   # Chapter 3 / Capítulo uno
      | [ivxlc\d]{1,6}[.)\-]\s                          # IV. / 3) / ii-
      | \#{1,3}\s+\w                                    # Markdown
      | [*\-]{3,}\s*$                                   # separadores de escena
    )""",
    re.IGNORECASE | re.VERBOSE,
)

_SUPPORTED_EXTENSIONS = {".txt", ".md"}
_MIN_BLOCK_WORDS      = 40


class TxtParser(BaseParser):
    """
    Parser para .txt y .md.

    Con al menos dos encabezados de capítulo el texto se corta por ellos
    (el encabezado abre su sección). Si no, se agrupan párrafos hasta
    superar ~40 palabras por sección.
    """

    def can_handle(self, file_path: str) -> bool:
        return os.path.splitext(file_path)[1].lower() in _SUPPORTED_EXTENSIONS

    def parse(self, file_path: str) -> RawBook:
        text = _read_text(file_path)
        return RawBook(
            title       = _guess_title(text, file_path),
            source_path = file_path,
            sections    = split_sections(text),
        )


def split_sections(text: str) -> list[str]:
    lines    = text.split("\n")
    headings = [i for i, line in enumerate(lines) if _HEADING_RE.match(line)]

    if len(headings) < 2:
        return _group_paragraphs(text)

    # El preámbulo antes del primer encabezado va con el primer capítulo
    bounds   = [0] + headings[1:] + [len(lines)]
    sections = ["\n".join(lines[a:b]).strip() for a, b in zip(bounds, bounds[1:])]
    return [s for s in sections if s] or [text.strip()]


def _group_paragraphs(text: str) -> list[str]:
    blocks = [b.strip() for b in re.split(r"\n{2,}", text) if b.strip()]

    sections: list[str] = []
    pending:  list[str] = []
    for block in blocks:
        pending.append(block)
        if sum(len(p.split()) for p in pending) >= _MIN_BLOCK_WORDS:
            sections.append("\n\n".join(pending))
            pending = []

    if pending:
        if sections:
            sections[-1] += "\n\n" + "\n\n".join(pending)
        else:
            sections.append("\n\n".join(pending))

    return sections or [text.strip()]


def _read_text(file_path: str) -> str:
    """UTF-8 primero, latin-1 como fallback."""
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return f.read()
    except UnicodeDecodeError:
        with open(file_path, "r", encoding="latin-1") as f:
            return f.read()


def _guess_title(text: str, file_path: str) -> str:
    first = text.strip().split("\n", 1)[0].strip().lstrip("#").strip()
    if first and len(first.split()) <= 10 and not first.endswith("."):
        return first
    return os.path.splitext(os.path.basename(file_path))[0]
