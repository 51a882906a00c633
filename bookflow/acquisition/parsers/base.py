from abc import ABC, abstractmethod

from bookflow.acquisition.models import RawBook


class BaseParser(ABC):

    @abstractmethod
    def can_handle(self, file_path: str) -> bool:
        """Devuelve True si el parser puede manejar el archivo"""
        raise NotImplementedError

    @abstractmethod
    def parse(self, file_path: str) -> RawBook:
        """Parsea el archivo y devuelve un RawBook limpio"""
        raise NotImplementedError
