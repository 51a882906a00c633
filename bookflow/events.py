# bookflow/events.py
import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from bookflow.control import running_loop

logger = logging.getLogger(__name__)


class EventKind(Enum):
    WORKFLOW_STARTED            = "workflow_started"
    STAGE_STARTED               = "stage_started"
    STAGE_COMPLETED             = "stage_completed"
    CHAPTER_PROCESSING_STARTED  = "chapter_processing_started"
    CHAPTER_PROCESSING_COMPLETED = "chapter_processing_completed"
    HUMAN_FEEDBACK_REQUESTED    = "human_feedback_requested"
    HUMAN_FEEDBACK_RECEIVED     = "human_feedback_received"
    CHAPTER_SKIPPED             = "chapter_skipped"
    WORKFLOW_PAUSED             = "workflow_paused"
    WORKFLOW_RESUMED            = "workflow_resumed"
    WORKFLOW_COMPLETED          = "workflow_completed"
    WORKFLOW_CANCELLED          = "workflow_cancelled"
    WORKFLOW_ERROR              = "workflow_error"


@dataclass(frozen=True)
class WorkflowEvent:
    kind:      EventKind
    payload:   dict[str, Any] = field(default_factory=dict)
    timestamp: datetime       = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[WorkflowEvent], None]


class EventChannel:
    """
    Canal tipado de eventos del workflow.

    Cada suscriptor recibe su propia asyncio.Queue acotada; si se llena,
    se descarta el evento más antiguo para no frenar el run. Los listeners
    síncronos (p. ej. el CLI) se invocan en el momento de emitir.
    Se guarda un historial corto para consultas posteriores.
    """

    def __init__(self, queue_size: int = 100, history_size: int = 200):
        self._queue_size  = queue_size
        self._lock        = threading.Lock()
        self._queues:    list[asyncio.Queue] = []
        self._listeners: list[Listener] = []
        self._history:   deque[WorkflowEvent] = deque(maxlen=history_size)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        with self._lock:
            self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            if queue in self._queues:
                self._queues.remove(queue)

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def history(self, kind: Optional[EventKind] = None) -> list[WorkflowEvent]:
        with self._lock:
            events = list(self._history)
        if kind is None:
            return events
        return [e for e in events if e.kind is kind]

    def emit(self, kind: EventKind, **payload: Any) -> WorkflowEvent:
        event = WorkflowEvent(kind=kind, payload=payload)
        loop  = self._loop
        if loop is not None and not loop.is_closed() and running_loop() is not loop:
            loop.call_soon_threadsafe(self._deliver, event)
        else:
            self._deliver(event)
        return event

    def _deliver(self, event: WorkflowEvent) -> None:
        with self._lock:
            self._history.append(event)
            queues    = list(self._queues)
            listeners = list(self._listeners)

        for queue in queues:
            if queue.full():
                dropped = queue.get_nowait()
                logger.debug("Cola de eventos llena, descartado %s", dropped.kind.value)
            queue.put_nowait(event)

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener de eventos falló con %s", event.kind.value)
