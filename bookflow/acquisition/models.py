from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass
class RawBook:
    """Lo que sale de cualquier Parser: texto limpio por sección + metadata"""
    title:             str
    source_path:       str
    sections:          list[str]
    detected_language: Optional[str] = None
    author:            Optional[str] = None


@dataclass
class AcquiredContent:
    """Un capítulo obtenido de una fuente, listo para entrar al workflow."""
    title:    str
    content:  str
    metadata: dict[str, Any] = field(default_factory=dict)


def content_metadata(content: str, **extra: Any) -> dict[str, Any]:
    """Métricas básicas de un texto adquirido."""
    return {
        "word_count":      len(content.split()),
        "character_count": len(content),
        "paragraphs":      len(content.split("\n\n")),
        "acquired_at":     datetime.now(timezone.utc).isoformat(),
        **extra,
    }
