from bookflow.acquisition.base import AcquisitionService, SourceDispatcher, expand_chapter_refs
from bookflow.acquisition.file_source import FileSource
from bookflow.acquisition.models import AcquiredContent, RawBook
from bookflow.acquisition.web_source import WebSource

__all__ = [
    "AcquisitionService",
    "SourceDispatcher",
    "expand_chapter_refs",
    "FileSource",
    "WebSource",
    "AcquiredContent",
    "RawBook",
]
