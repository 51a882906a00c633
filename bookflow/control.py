# bookflow/control.py
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from bookflow.errors import WorkflowInterrupted

logger = logging.getLogger(__name__)

T = TypeVar("T")

SKIP   = "skip"
CANCEL = "cancel"


class WorkflowControl:
    """
    Token de control cooperativo de un run: pausa, reanudación, skip y cancelación.

    Los setters se pueden llamar desde cualquier hilo: si el loop del run
    está ligado y el caller no corre en él, el cambio se agenda con
    call_soon_threadsafe. El workflow consulta el token en `checkpoint()`
    (entre etapas) y `guard()` (durante una llamada en vuelo o una espera).
    """

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running     = asyncio.Event()
        self._interrupted = asyncio.Event()
        self._running.set()
        self._reason: Optional[str] = None
        self._detail: Optional[str] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    # ------------------------------------------------------------------
    # Setters (thread-safe)
    # ------------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def pause(self) -> None:
        self._dispatch(self._running.clear)

    def resume(self) -> None:
        self._dispatch(self._running.set)

    def skip(self, detail: Optional[str] = None) -> None:
        self._dispatch(lambda: self._interrupt(SKIP, detail))

    def cancel(self, detail: Optional[str] = None) -> None:
        self._dispatch(lambda: self._interrupt(CANCEL, detail))

    def clear_skip(self) -> None:
        """Tras saltar un capítulo, el siguiente arranca limpio. Un cancel persiste."""
        if self._reason == SKIP:
            self._reason = None
            self._detail = None
            self._interrupted.clear()

    # ------------------------------------------------------------------
    # Puntos de control (desde el loop del run)
    # ------------------------------------------------------------------

    async def checkpoint(self) -> None:
        """Bloquea mientras haya pausa; lanza WorkflowInterrupted si hay skip/cancel."""
        self._raise_if_interrupted()
        if not self._running.is_set():
            logger.debug("Run en pausa, esperando reanudación")
            await self.guard(self._running.wait())
        self._raise_if_interrupted()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Espera `awaitable` compitiendo con la señal de interrupción.
        Si llega skip/cancel antes, la tarea en vuelo se cancela y se lanza
        WorkflowInterrupted.
        """
        if self._reason is not None:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._raise_if_interrupted()

        task   = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._interrupted.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task in done:
                return task.result()
        finally:
            for pending in (task, waiter):
                if not pending.done():
                    pending.cancel()

        # La interrupción ganó: drenar la tarea cancelada antes de salir
        await asyncio.gather(task, return_exceptions=True)
        self._raise_if_interrupted()
        raise AssertionError("interrupción sin motivo")  # pragma: no cover

    # ------------------------------------------------------------------
    # Helpers privados
    # ------------------------------------------------------------------

    def _interrupt(self, reason: str, detail: Optional[str]) -> None:
        if self._reason == CANCEL:
            return   # cancel domina sobre un skip posterior
        self._reason = reason
        self._detail = detail
        self._interrupted.set()

    def _raise_if_interrupted(self) -> None:
        if self._reason is not None:
            raise WorkflowInterrupted(self._reason, self._detail)

    def _dispatch(self, action: Callable[[], Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or running_loop() is loop:
            action()
        else:
            loop.call_soon_threadsafe(action)


def running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
