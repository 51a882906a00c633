from .factory import ParserFactory, UnsupportedFormatError

__all__ = ["ParserFactory", "UnsupportedFormatError"]
