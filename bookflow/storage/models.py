# storage/models.py
from dataclasses import dataclass, field
from typing import Any


@dataclass
class SearchHit:
    """Un capítulo devuelto por una búsqueda. distance: 0 = coincidencia total."""
    id:       str
    content:  str
    metadata: dict[str, Any] = field(default_factory=dict)
    distance: float          = 1.0


@dataclass
class ContentStats:
    total_books:    int   = 0
    total_chapters: int   = 0
    total_versions: int   = 0
    mean_reward:    float = 0.0
