import os

from bookflow.acquisition.models import RawBook
from .base import BaseParser
from .epub_parser import EpubParser
from .pdf_parser import PdfParser
from .txt_parser import TxtParser


class UnsupportedFormatError(Exception):
    """Ningún parser registrado puede manejar el archivo."""


class ParserFactory:
    """
    Registro central de parsers. El primero cuyo can_handle() responda
    True gana; register() antepone parsers externos.
    """

    def __init__(self):
        self._parsers: list[BaseParser] = [EpubParser(), PdfParser(), TxtParser()]

    def register(self, parser: BaseParser) -> None:
        self._parsers.insert(0, parser)

    def parse(self, file_path: str) -> RawBook:
        """
        Raises:
            FileNotFoundError: si el archivo no existe.
            UnsupportedFormatError: si ningún parser puede manejarlo.
        """
        if not os.path.isfile(file_path):
            raise FileNotFoundError(f"Archivo no encontrado: {file_path}")

        for parser in self._parsers:
            if parser.can_handle(file_path):
                return parser.parse(file_path)

        ext = os.path.splitext(file_path)[1].lower() or "(sin extensión)"
        raise UnsupportedFormatError(
            f"Formato '{ext}' no soportado. Formatos disponibles: .txt, .md, .epub, .pdf"
        )
