import asyncio
import logging
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from bookflow.acquisition.base import AcquisitionService
from bookflow.acquisition.models import AcquiredContent, content_metadata
from bookflow.errors import AcquisitionFailure

logger = logging.getLogger(__name__)

_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; bookflow/0.1)"}

# Contenedores de texto en orden de preferencia
_CONTENT_SELECTORS = [".mw-parser-output", "article", "main", "body"]


class WebSource(AcquisitionService):
    """
    Capítulos desde páginas HTML simples (sin render de JavaScript).
    `request_delay` separa peticiones consecutivas al mismo sitio.
    """

    def __init__(
        self,
        client:        Optional[httpx.AsyncClient] = None,
        timeout:       float = 30.0,
        request_delay: float = 0.0,
    ):
        self._client       = client or httpx.AsyncClient(timeout=timeout, headers=_HEADERS)
        self._owns_client  = client is None
        self._delay        = request_delay
        self._fetched_once = False

    async def fetch(self, source_ref: str) -> AcquiredContent:
        if self._fetched_once and self._delay:
            await asyncio.sleep(self._delay)
        self._fetched_once = True

        try:
            resp = await self._client.get(source_ref, follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Fallo al descargar %s: %s", source_ref, e)
            raise AcquisitionFailure(f"No se pudo descargar {source_ref}: {e}") from e

        title, content = extract_text(resp.text)
        if not content:
            raise AcquisitionFailure(f"{source_ref}: la página no tiene texto extraíble")

        return AcquiredContent(
            title    = title or source_ref.rstrip("/").rsplit("/", 1)[-1],
            content  = content,
            metadata = content_metadata(content, source_ref=source_ref, url=str(resp.url)),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def extract_text(html: str) -> tuple[str, str]:
    """(título, texto) de una página. El texto conserva párrafos separados por línea en blanco."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "nav", "header", "footer", "svg"]):
        tag.decompose()

    heading = soup.find("h1") or soup.find("title")
    title   = heading.get_text(" ", strip=True) if heading else ""

    container = next((c for c in (soup.select_one(s) for s in _CONTENT_SELECTORS) if c), soup)
    paragraphs = [p.get_text(" ", strip=True) for p in container.find_all("p")]
    paragraphs = [p for p in paragraphs if p]
    if paragraphs:
        return title, "\n\n".join(paragraphs)
    return title, container.get_text("\n", strip=True)
