import re
from abc import ABC, abstractmethod

from bookflow.acquisition.models import AcquiredContent

_CHAPTER_ONE_RE = re.compile(r"Chapter_1(?!\d)")


class AcquisitionService(ABC):
    """Fuente de capítulos: una referencia (URL, ruta) → texto limpio."""

    @abstractmethod
    async def fetch(self, source_ref: str) -> AcquiredContent:
        """Puede lanzar AcquisitionFailure."""
        ...

    async def aclose(self) -> None:
        """Libera recursos (clientes HTTP). Por defecto no hace nada."""


def expand_chapter_refs(source_ref: str, chapter_count: int) -> list[str]:
    """
    Referencias de los capítulos 1..N a partir de la del primero.

    Si la referencia contiene `Chapter_1` se sustituye por `Chapter_i`
    (convención de Wikisource). Si no, se añade `#i`; con un solo capítulo
    se devuelve la referencia tal cual.
    """
    if chapter_count < 1:
        return []
    if _CHAPTER_ONE_RE.search(source_ref):
        return [_CHAPTER_ONE_RE.sub(f"Chapter_{i}", source_ref, count=1)
                for i in range(1, chapter_count + 1)]
    if chapter_count == 1:
        return [source_ref]
    return [f"{source_ref}#{i}" for i in range(1, chapter_count + 1)]


class SourceDispatcher(AcquisitionService):
    """http(s) → fuente web, cualquier otra cosa → archivo local."""

    def __init__(self, file_source: AcquisitionService, web_source: AcquisitionService):
        self._file = file_source
        self._web  = web_source

    async def fetch(self, source_ref: str) -> AcquiredContent:
        if source_ref.lower().startswith(("http://", "https://")):
            return await self._web.fetch(source_ref)
        return await self._file.fetch(source_ref)

    async def aclose(self) -> None:
        await self._web.aclose()
        await self._file.aclose()
