import asyncio
import logging

from bookflow.acquisition.base import AcquisitionService
from bookflow.acquisition.models import AcquiredContent, RawBook, content_metadata
from bookflow.acquisition.parsers import ParserFactory
from bookflow.errors import AcquisitionFailure

logger = logging.getLogger(__name__)


class FileSource(AcquisitionService):
    """
    Capítulos desde un libro local (.txt, .md, .epub, .pdf).
    `ruta#N` selecciona la sección N (1-based); sin sufijo, la primera.
    El libro parseado se cachea por ruta: N capítulos, un solo parseo.
    """

    def __init__(self, parser_factory: ParserFactory | None = None):
        self._parsers = parser_factory or ParserFactory()
        self._cache: dict[str, RawBook] = {}

    async def fetch(self, source_ref: str) -> AcquiredContent:
        path, index = _split_ref(source_ref)
        raw = await self._load(path)

        if not 1 <= index <= len(raw.sections):
            raise AcquisitionFailure(
                f"{path}: sección {index} fuera de rango (el libro tiene {len(raw.sections)})"
            )

        content = raw.sections[index - 1]
        return AcquiredContent(
            title    = _section_title(content, raw.title, index),
            content  = content,
            metadata = content_metadata(
                content,
                source_ref     = source_ref,
                book_title     = raw.title,
                author         = raw.author,
                language       = raw.detected_language,
                section        = index,
                total_sections = len(raw.sections),
            ),
        )

    async def _load(self, path: str) -> RawBook:
        if path not in self._cache:
            try:
                raw = await asyncio.to_thread(self._parsers.parse, path)
            except Exception as e:
                raise AcquisitionFailure(f"No se pudo leer {path}: {e}") from e
            if not raw.sections:
                raise AcquisitionFailure(f"{path}: el libro no tiene contenido legible")
            logger.info("Libro '%s' cargado: %d secciones", raw.title, len(raw.sections))
            self._cache[path] = raw
        return self._cache[path]


def _split_ref(source_ref: str) -> tuple[str, int]:
    path, sep, suffix = source_ref.rpartition("#")
    if sep and suffix.isdigit() and path:
        return path, int(suffix)
    return source_ref, 1


def _section_title(content: str, book_title: str, index: int) -> str:
    first = content.split("\n", 1)[0].strip().lstrip("#").strip()
    if first and len(first.split()) <= 10 and not first.endswith("."):
        return first
    return f"{book_title}, parte {index}"
