# bookflow/models.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ChapterStatus(Enum):
    SCRAPED      = "scraped"
    TRANSFORMING = "transforming"
    AI_REVIEWED  = "ai_reviewed"
    HUMAN_REVIEW = "human_review"
    APPROVED     = "approved"
    PUBLISHED    = "published"


_STATUS_ORDER: list[ChapterStatus] = list(ChapterStatus)

# Único retroceso permitido: una pasada extra tras la revisión humana
_LOOP_BACK = (ChapterStatus.HUMAN_REVIEW, ChapterStatus.TRANSFORMING)


class AgentRole(Enum):
    WRITER   = "writer"
    REVIEWER = "reviewer"
    EDITOR   = "editor"


# ------------------------------------------------------------------
# Registros inmutables
# ------------------------------------------------------------------

@dataclass(frozen=True)
class SpinRecord:
    """Una llamada a un agente dentro de una pasada del pipeline."""
    role:      AgentRole
    model:     str
    prompt:    str
    response:  str
    reward:    float
    metadata:  dict[str, Any] = field(default_factory=dict)
    id:        str            = field(default_factory=_new_id)
    timestamp: datetime       = field(default_factory=_now)


@dataclass(frozen=True)
class HumanFeedback:
    chapter_id:  str
    user_id:     str
    role:        AgentRole
    comment:     str
    rating:      float
    suggestions: tuple[str, ...] = ()
    id:          str             = field(default_factory=_new_id)
    timestamp:   datetime        = field(default_factory=_now)

    def __post_init__(self):
        if not 0 <= self.rating <= 10:
            raise ValueError(f"rating fuera de rango [0, 10]: {self.rating}")
        # Acepta listas y las congela
        object.__setattr__(self, "suggestions", tuple(self.suggestions))


@dataclass(frozen=True)
class RewardObservation:
    subject_id: str
    action:     str
    reward:     float
    state:      dict[str, Any]
    next_state: dict[str, Any]
    id:         str      = field(default_factory=_new_id)
    timestamp:  datetime = field(default_factory=_now)


@dataclass
class ValueTableEntry:
    state:  str     # clave canónica del estado
    action: str
    value:  float = 0.0
    visits: int   = 0


# ------------------------------------------------------------------
# Libro y capítulos
# ------------------------------------------------------------------

@dataclass
class Chapter:
    title:            str
    content:          str
    original_content: str                 = ""
    id:               str                 = field(default_factory=_new_id)
    version:          int                 = 1
    status:           ChapterStatus       = ChapterStatus.SCRAPED
    spin_history:     list[SpinRecord]    = field(default_factory=list)
    human_feedback:   list[HumanFeedback] = field(default_factory=list)
    created_at:       datetime            = field(default_factory=_now)
    updated_at:       datetime            = field(default_factory=_now)

    def __post_init__(self):
        if not self.original_content:
            self.original_content = self.content

    @property
    def reward_score(self) -> float:
        """Media de las recompensas de todos los spins, acotada a [0, 100]."""
        if not self.spin_history:
            return 0.0
        mean = sum(s.reward for s in self.spin_history) / len(self.spin_history)
        return max(0.0, min(100.0, mean))

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    def advance_to(self, status: ChapterStatus) -> None:
        """
        Mueve el capítulo a `status`.
        Solo se avanza en el orden del ciclo de vida, salvo el retroceso
        HUMAN_REVIEW → TRANSFORMING. Cualquier otro salto lanza ValueError.
        """
        current = _STATUS_ORDER.index(self.status)
        target  = _STATUS_ORDER.index(status)
        if target <= current and (self.status, status) != _LOOP_BACK:
            raise ValueError(
                f"Transición inválida: {self.status.value} → {status.value}"
            )
        self.status = status
        self.touch()

    def commit_pass(self, content: str, records: list[SpinRecord]) -> None:
        """Aplica una pasada completa del pipeline: contenido, historial y versión."""
        self.content = content
        self.spin_history.extend(records)
        self.version += 1
        self.touch()

    def touch(self) -> None:
        self.updated_at = _now()


@dataclass
class BookMetadata:
    source_url:             str
    estimated_reading_time: float          = 0.0   # minutos a 200 palabras/min
    author:                 Optional[str]  = None
    language:               Optional[str]  = None
    extra:                  dict[str, Any] = field(default_factory=dict)


@dataclass
class Book:
    """Unidad de trabajo del workflow."""
    title:      str
    metadata:   BookMetadata
    chapters:   list[Chapter] = field(default_factory=list)
    id:         str           = field(default_factory=_new_id)
    created_at: datetime      = field(default_factory=_now)
    updated_at: datetime      = field(default_factory=_now)

    def total_words(self) -> int:
        return sum(c.word_count for c in self.chapters)

    def refresh_reading_time(self) -> None:
        self.metadata.estimated_reading_time = self.total_words() / 200
        self.updated_at = _now()

    def chapter(self, chapter_id: str) -> Optional[Chapter]:
        return next((c for c in self.chapters if c.id == chapter_id), None)


# ------------------------------------------------------------------
# Estado del workflow
# ------------------------------------------------------------------

@dataclass
class WorkflowOptions:
    chapter_count:    int             = 1
    human_in_loop:    bool            = False
    voice_enabled:    bool            = False
    learning_enabled: bool            = True
    feedback_timeout: Optional[float] = None   # None → valor de la config


@dataclass
class WorkflowState:
    book_id:            str
    total_chapters:     int
    current_chapter:    int           = 0      # 1-based, 0 = aún adquiriendo
    current_chapter_id: Optional[str] = None
    current_stage:      ChapterStatus = ChapterStatus.SCRAPED
    human_in_loop:      bool          = False
    voice_enabled:      bool          = False
    learning_enabled:   bool          = True
    paused:             bool          = False
    active:             bool          = True
    error:              Optional[str] = None
