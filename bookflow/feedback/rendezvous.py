# feedback/rendezvous.py
import asyncio
import logging
import threading
from collections import defaultdict
from typing import TYPE_CHECKING, Iterable, Optional

from bookflow.models import HumanFeedback

if TYPE_CHECKING:
    from bookflow.control import WorkflowControl

logger = logging.getLogger(__name__)


class FeedbackRendezvous:
    """
    Buzón de feedback humano por capítulo.

    `submit()` se puede llamar desde cualquier hilo en cualquier momento;
    el workflow consume con `drain()` (sin bloquear) o `await_feedback()`
    (espera acotada por timeout). Consumir vacía el buzón de ese capítulo:
    cada feedback se entrega exactamente una vez.
    """

    def __init__(self):
        self._lock    = threading.Lock()
        self._mailbox: dict[str, list[HumanFeedback]] = defaultdict(list)
        self._waiters: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Event]]] = defaultdict(list)

    def submit(self, feedback: HumanFeedback) -> None:
        with self._lock:
            self._mailbox[feedback.chapter_id].append(feedback)
            waiters = list(self._waiters.get(feedback.chapter_id, ()))

        logger.debug("Feedback recibido para %s (rating %.1f)", feedback.chapter_id, feedback.rating)

        for loop, event in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(event.set)

    def drain(self, chapter_id: str) -> list[HumanFeedback]:
        """Toma todo lo pendiente del capítulo sin esperar."""
        with self._lock:
            return self._mailbox.pop(chapter_id, [])

    def discard(self, chapter_ids: Iterable[str]) -> int:
        """Descarta el feedback pendiente de capítulos que ya no lo van a consumir."""
        with self._lock:
            dropped = sum(len(self._mailbox.pop(cid, ())) for cid in chapter_ids)
        if dropped:
            logger.info("Descartados %d feedback tardíos", dropped)
        return dropped

    def pending_count(self, chapter_id: Optional[str] = None) -> int:
        with self._lock:
            if chapter_id is not None:
                return len(self._mailbox.get(chapter_id, ()))
            return sum(len(items) for items in self._mailbox.values())

    async def await_feedback(
        self,
        chapter_id: str,
        timeout:    float = 30.0,
        control:    Optional["WorkflowControl"] = None,
    ) -> list[HumanFeedback]:
        """
        Espera hasta que haya feedback para el capítulo o venza el timeout.
        Vacío al vencer: no es un error, el workflow sigue sin feedback.
        Un skip/cancel del `control` interrumpe la espera con WorkflowInterrupted.
        """
        loop  = asyncio.get_running_loop()
        event = asyncio.Event()

        with self._lock:
            ready = self._mailbox.pop(chapter_id, [])
            if not ready:
                self._waiters[chapter_id].append((loop, event))
        if ready:
            return ready

        try:
            wait = event.wait()
            if control is not None:
                wait = control.guard(wait)
            await asyncio.wait_for(wait, timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Sin feedback para %s tras %.1fs, se continúa", chapter_id, timeout)
        finally:
            with self._lock:
                waiters = self._waiters.get(chapter_id, [])
                if (loop, event) in waiters:
                    waiters.remove((loop, event))
                if not waiters:
                    self._waiters.pop(chapter_id, None)

        return self.drain(chapter_id)
