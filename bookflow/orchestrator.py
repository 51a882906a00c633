# bookflow/orchestrator.py
import asyncio
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from bookflow.acquisition.base import AcquisitionService, expand_chapter_refs
from bookflow.agents.pipeline import MultiAgentPipeline
from bookflow.control import SKIP, WorkflowControl
from bookflow.errors import (
    BookflowError, ConflictError, ValidationFailure, WorkflowInterrupted,
)
from bookflow.events import EventChannel, EventKind
from bookflow.feedback.rendezvous import FeedbackRendezvous
from bookflow.learning.reward import acquisition_reward
from bookflow.learning.reward_engine import RewardEngine
from bookflow.models import (
    AgentRole, Book, BookMetadata, Chapter, ChapterStatus, HumanFeedback,
    RewardObservation, SpinRecord, WorkflowOptions, WorkflowState,
)
from bookflow.storage.models import SearchHit
from bookflow.storage.store import ContentStore
from bookflow.voice.commands import CommandAction, VoiceCommand

logger = logging.getLogger(__name__)

# Un rating por debajo de este umbral pide una pasada extra del pipeline
_REWORK_THRESHOLD = 7

_APPROVE_RATING = 10.0
_REJECT_RATING  = 0.0
_NEUTRAL_RATING = 5.0

_VOICE_USER = "voice_user"


# ------------------------------------------------------------------
# Sesión de un run
# ------------------------------------------------------------------

@dataclass
class WorkflowSession:
    """Todo lo que pertenece a un run: libro, opciones, estado y token de control."""
    source_ref: str
    book:       Book
    options:    WorkflowOptions
    state:      WorkflowState
    control:    WorkflowControl = field(default_factory=WorkflowControl)
    task:       Optional[asyncio.Task] = None
    error:      Optional[str] = None
    processed:  int = 0
    skipped:    int = 0

    @property
    def active(self) -> bool:
        return self.state.active


# ------------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------------

class WorkflowOrchestrator:
    """
    Dirige el workflow completo de un libro de extremo a extremo.
    No tiene lógica de negocio propia: coordina adquisición, pipeline de
    agentes, feedback humano, almacén y motor de recompensas.

    Un solo run activo por orchestrator. start_workflow() devuelve el id del
    libro en cuanto el run queda lanzado en segundo plano; el resto de
    operaciones (estado, pausa, feedback, comandos) se pueden llamar mientras
    tanto, también desde otros hilos.
    """

    def __init__(
        self,
        acquisition:      AcquisitionService,
        pipeline:         MultiAgentPipeline,
        engine:           RewardEngine,
        rendezvous:       FeedbackRendezvous,
        store:            ContentStore,
        events:           Optional[EventChannel] = None,
        feedback_timeout: float = 30.0,
    ):
        self._acquisition      = acquisition
        self._pipeline         = pipeline
        self._engine           = engine
        self._rendezvous       = rendezvous
        self._store            = store
        self._events           = events or EventChannel()
        self._feedback_timeout = feedback_timeout

        self._lock       = threading.Lock()
        self._session:   Optional[WorkflowSession] = None
        self._background: set[asyncio.Task] = set()
        self._value_table_loaded = False
        self._closed_chapters: set[str] = set()

    @property
    def events(self) -> EventChannel:
        return self._events

    # ------------------------------------------------------------------
    # Ciclo de vida del run
    # ------------------------------------------------------------------

    async def start_workflow(
        self,
        source_ref: str,
        options:    Optional[WorkflowOptions] = None,
    ) -> str:
        """
        Valida, crea el libro y lanza el run en segundo plano.

        Raises:
            ValidationFailure: source_ref vacío o chapter_count < 1.
            ConflictError: ya hay un run activo.
        """
        options = options or WorkflowOptions()
        _validate_start(source_ref, options)

        with self._lock:
            if self._session is not None and self._session.active:
                raise ConflictError(
                    f"Ya hay un workflow activo (book_id={self._session.book.id})"
                )
            book    = Book(title=source_ref.strip(), metadata=BookMetadata(source_url=source_ref.strip()))
            session = WorkflowSession(
                source_ref = source_ref.strip(),
                book       = book,
                options    = options,
                state      = WorkflowState(
                    book_id          = book.id,
                    total_chapters   = options.chapter_count,
                    human_in_loop    = options.human_in_loop,
                    voice_enabled    = options.voice_enabled,
                    learning_enabled = options.learning_enabled,
                ),
            )
            self._session = session

        loop = asyncio.get_running_loop()
        session.control.bind(loop)
        self._events.bind(loop)
        session.task = self._spawn(self._run(session), name=f"workflow-{book.id}")
        return book.id

    async def wait_for_completion(self, timeout: Optional[float] = None) -> Optional[WorkflowState]:
        """Espera a que termine el run actual y devuelve su estado final."""
        session = self._session
        if session is None or session.task is None:
            return None
        await asyncio.wait_for(asyncio.shield(session.task), timeout=timeout)
        return self.get_workflow_status()

    async def close(self) -> None:
        """Cierra clientes HTTP y la conexión del almacén. El run debe haber terminado."""
        await self._acquisition.aclose()
        await self._store.aclose()

    def get_workflow_status(self) -> Optional[WorkflowState]:
        """Copia del estado actual; tras terminar se conserva el último estado."""
        with self._lock:
            if self._session is None:
                return None
            return dataclasses.replace(self._session.state)

    def pause_workflow(self) -> bool:
        session = self._active_session()
        if session is None:
            return False
        session.control.pause()
        self._update_state(session, paused=True)
        self._events.emit(EventKind.WORKFLOW_PAUSED, book_id=session.book.id)
        self._log("Workflow en pausa")
        return True

    def resume_workflow(self) -> bool:
        session = self._active_session()
        if session is None:
            return False
        session.control.resume()
        self._update_state(session, paused=False)
        self._events.emit(EventKind.WORKFLOW_RESUMED, book_id=session.book.id)
        self._log("Workflow reanudado")
        return True

    def skip_chapter(self, reason: Optional[str] = None) -> bool:
        session = self._active_session()
        if session is None:
            return False
        session.control.skip(reason)
        return True

    def cancel_workflow(self) -> bool:
        session = self._active_session()
        if session is None:
            return False
        session.control.cancel("cancelado por el usuario")
        return True

    # ------------------------------------------------------------------
    # Entradas externas: feedback y comandos
    # ------------------------------------------------------------------

    def submit_feedback(self, feedback: HumanFeedback) -> None:
        """Se acepta en cualquier momento; el run lo consume al llegar a ese capítulo."""
        if not feedback.chapter_id:
            raise ValidationFailure("El feedback necesita chapter_id")
        with self._lock:
            closed = feedback.chapter_id in self._closed_chapters
        if closed:
            logger.info("Feedback para el capítulo cerrado %s, se descarta", feedback.chapter_id)
            return
        self._rendezvous.submit(feedback)

    def handle_command(self, command: VoiceCommand) -> Optional[HumanFeedback]:
        """
        Aplica un comando de voz al run activo.
        Las acciones de valoración generan feedback sobre el capítulo en curso
        y lo devuelven; pausa/reanudación/skip devuelven None.
        """
        session = self._active_session()
        if session is None:
            raise ValidationFailure("No hay ningún workflow activo")
        if not session.options.voice_enabled:
            raise ValidationFailure("Los comandos de voz no están habilitados en este workflow")

        action = command.action
        if action is CommandAction.PAUSE:
            self.pause_workflow()
            return None
        if action is CommandAction.RESUME:
            self.resume_workflow()
            return None
        if action is CommandAction.SKIP:
            self.skip_chapter(command.parameters.get("reason"))
            return None

        chapter_id = session.state.current_chapter_id
        if chapter_id is None:
            raise ValidationFailure("Todavía no hay capítulo en curso para valorar")

        params = command.parameters
        if action is CommandAction.APPROVE:
            rating = _APPROVE_RATING
        elif action is CommandAction.REJECT:
            rating = _REJECT_RATING
        else:
            rating = max(0.0, min(10.0, float(params.get("rating", _NEUTRAL_RATING))))

        feedback = HumanFeedback(
            chapter_id = chapter_id,
            user_id    = _VOICE_USER,
            role       = AgentRole.REVIEWER,
            comment    = params.get("feedback_content") or command.transcript or action.value,
            rating     = rating,
        )
        self.submit_feedback(feedback)
        return feedback

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------

    async def search_content(
        self,
        query:   str,
        filters: Optional[dict[str, Any]] = None,
        limit:   int = 20,
    ) -> dict[str, Any]:
        if not query or not query.strip():
            raise ValidationFailure("La búsqueda necesita texto")
        hits = await self._store.query(query, filters, limit)
        relevance = sum(1 - h.distance for h in hits) / len(hits) if hits else 0.0
        return {"chapters": hits, "relevance_score": relevance}

    async def similar_chapters(self, chapter_id: str, limit: int = 5) -> list[SearchHit]:
        if limit < 1:
            raise ValidationFailure("limit debe ser >= 1")
        return await self._store.similar_chapters(chapter_id, limit)

    async def chapter_versions(self, chapter_id: str) -> list[SpinRecord]:
        """Historial de spins guardado para el capítulo, del más antiguo al más reciente."""
        return await self._store.chapter_versions(chapter_id)

    async def export_book(self, book_id: str) -> dict[str, Any]:
        book = await self._find_book(book_id)
        if book is None:
            raise ValidationFailure(f"Libro desconocido: {book_id}")

        chapters = book.chapters
        rewards  = [c.reward_score for c in chapters if c.spin_history]
        return {
            "book":  book,
            "stats": {
                "total_chapters":         len(chapters),
                "approved_chapters":      sum(1 for c in chapters if c.status is ChapterStatus.APPROVED),
                "total_words":            book.total_words(),
                "estimated_reading_time": book.metadata.estimated_reading_time,
                "total_versions":         sum(len(c.spin_history) for c in chapters),
                "human_feedback":         sum(len(c.human_feedback) for c in chapters),
                "mean_reward":            sum(rewards) / len(rewards) if rewards else 0.0,
            },
        }

    async def get_performance_metrics(self) -> dict[str, Any]:
        content_stats = await self._store.stats()
        current       = self.get_workflow_status()
        return {
            "reward_stats":     self._engine.get_reward_stats(),
            "content_stats":    dataclasses.asdict(content_stats),
            "processing_stats": {
                "current_workflow":    dataclasses.asdict(current) if current else None,
                "queued_feedback":     self._rendezvous.pending_count(),
                "learning_parameters": dataclasses.asdict(self._engine.parameters),
            },
        }

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(self, session: WorkflowSession) -> None:
        book = session.book
        self._events.emit(
            EventKind.WORKFLOW_STARTED,
            book_id    = book.id,
            source_ref = session.source_ref,
            options    = dataclasses.asdict(session.options),
        )
        self._log(f"Workflow iniciado: {session.source_ref} ({session.options.chapter_count} capítulos)")

        try:
            await self._load_value_table(session.options)
            await self._acquire(session)
            await self._store.store_book(book)

            total = len(book.chapters)
            for index, chapter in enumerate(book.chapters, start=1):
                await self._process_chapter(session, index, total, chapter)
        except WorkflowInterrupted as e:
            # Solo llega aquí un cancel: los skip se resuelven por capítulo
            await self._finish_cancelled(session, e)
        except BookflowError as e:
            self._fail(session, e)
        except Exception as e:
            logger.exception("Error inesperado en el workflow %s", book.id)
            self._fail(session, e)
        else:
            await self._finish_completed(session)
        finally:
            self._close_chapters([c.id for c in book.chapters])
            self._update_state(session, active=False, paused=False)

    async def _acquire(self, session: WorkflowSession) -> None:
        book, control, options = session.book, session.control, session.options
        refs = expand_chapter_refs(session.source_ref, options.chapter_count)

        self._events.emit(EventKind.STAGE_STARTED, book_id=book.id, stage="acquisition", chapters=len(refs))

        for index, ref in enumerate(refs, start=1):
            try:
                await control.checkpoint()
                acquired = await control.guard(self._acquisition.fetch(ref))
            except WorkflowInterrupted as e:
                if e.reason != SKIP:
                    raise
                control.clear_skip()
                self._events.emit(
                    EventKind.CHAPTER_SKIPPED,
                    book_id=book.id, chapter_index=index, stage="acquisition", reason=e.detail,
                )
                session.skipped += 1
                continue

            chapter = Chapter(title=acquired.title, content=acquired.content)
            book.chapters.append(chapter)

            if len(book.chapters) == 1:
                meta = acquired.metadata
                book.title              = meta.get("book_title") or acquired.title
                book.metadata.author    = meta.get("author")
                book.metadata.language  = meta.get("language")
                book.metadata.extra     = {"first_chapter": dict(meta)}

            if options.learning_enabled:
                reward = acquisition_reward(acquired.content, acquired.title)
                self._engine.record(RewardObservation(
                    subject_id = chapter.id,
                    action     = "scrape_content",
                    reward     = reward,
                    state      = {"source_ref": ref, "content_length": len(acquired.content)},
                    next_state = {"scraped": True, "quality": reward},
                ))

        book.refresh_reading_time()
        self._events.emit(
            EventKind.STAGE_COMPLETED,
            book_id=book.id, stage="acquisition", chapters=len(book.chapters),
        )
        self._log(
            f"'{book.title}': {len(book.chapters)} capítulos adquiridos, "
            f"~{book.metadata.estimated_reading_time:.1f} min de lectura"
        )

    async def _process_chapter(
        self,
        session: WorkflowSession,
        index:   int,
        total:   int,
        chapter: Chapter,
    ) -> None:
        """
        Un capítulo de principio a fin. Un skip abandona solo este capítulo;
        cualquier otro error sube y termina el run.
        """
        book, control, options = session.book, session.control, session.options
        self._update_state(
            session,
            current_chapter    = index,
            current_chapter_id = chapter.id,
            current_stage      = chapter.status,
        )

        try:
            await control.checkpoint()
            self._events.emit(
                EventKind.CHAPTER_PROCESSING_STARTED,
                book_id=book.id, chapter_id=chapter.id, chapter_index=index,
            )
            self._advance(session, chapter, ChapterStatus.TRANSFORMING)

            # Feedback que llegó antes de empezar: se usa sin esperar
            seed = self._rendezvous.drain(chapter.id) if options.human_in_loop else []
            chapter.human_feedback.extend(seed)

            await self._pipeline.process_chapter(chapter, seed, control, options.learning_enabled)
            self._advance(session, chapter, ChapterStatus.AI_REVIEWED)

            if options.human_in_loop:
                await self._human_review(session, index, chapter, seed)

            self._advance(session, chapter, ChapterStatus.APPROVED)
            await self._store.store_chapter(chapter, book.id)
            session.processed += 1

        except WorkflowInterrupted as e:
            if e.reason != SKIP:
                raise
            control.clear_skip()
            await self._store.store_chapter(chapter, book.id)
            session.skipped += 1
            self._events.emit(
                EventKind.CHAPTER_SKIPPED,
                book_id=book.id, chapter_id=chapter.id, chapter_index=index, reason=e.detail,
            )
            self._log(f"Capítulo {index}/{total} saltado")
        else:
            self._events.emit(
                EventKind.CHAPTER_PROCESSING_COMPLETED,
                book_id       = book.id,
                chapter_id    = chapter.id,
                chapter_index = index,
                version       = chapter.version,
                reward_score  = chapter.reward_score,
            )
            self._log(
                f"Capítulo {index}/{total} aprobado: v{chapter.version}, "
                f"reward {chapter.reward_score:.1f}"
            )

        self._close_chapters([chapter.id])

        if options.learning_enabled:
            self._tune()

    async def _human_review(
        self,
        session: WorkflowSession,
        index:   int,
        chapter: Chapter,
        seed:    list[HumanFeedback],
    ) -> None:
        """Una espera acotada; un rating bajo pide exactamente una pasada más."""
        book, control, options = session.book, session.control, session.options
        timeout = options.feedback_timeout if options.feedback_timeout is not None else self._feedback_timeout

        self._advance(session, chapter, ChapterStatus.HUMAN_REVIEW)
        self._events.emit(
            EventKind.HUMAN_FEEDBACK_REQUESTED,
            book_id=book.id, chapter_id=chapter.id, chapter_index=index, timeout=timeout,
        )
        self._log(f"Esperando feedback humano del capítulo {index} ({timeout:.0f}s)")

        received = await self._rendezvous.await_feedback(chapter.id, timeout, control)
        if not received:
            return

        chapter.human_feedback.extend(received)
        ratings = [f.rating for f in received]
        self._events.emit(
            EventKind.HUMAN_FEEDBACK_RECEIVED,
            book_id=book.id, chapter_id=chapter.id, count=len(received),
            mean_rating=sum(ratings) / len(ratings),
        )

        if any(r < _REWORK_THRESHOLD for r in ratings):
            self._log(f"Feedback bajo en capítulo {index}: nueva pasada de agentes")
            self._advance(session, chapter, ChapterStatus.TRANSFORMING)
            await self._pipeline.process_chapter(
                chapter, seed + received, control, options.learning_enabled,
            )
            self._advance(session, chapter, ChapterStatus.AI_REVIEWED)

    def _tune(self) -> None:
        performance = self._engine.rolling_performance(window=10)
        self._engine.optimize_parameters(performance)
        self._pipeline.tune_agents()

    # ------------------------------------------------------------------
    # Cierre del run
    # ------------------------------------------------------------------

    async def _finish_completed(self, session: WorkflowSession) -> None:
        book = session.book
        await self._store.store_book(book)
        if session.options.learning_enabled:
            await self._store.save_value_table(self._engine.export_table())

        rewards = [c.reward_score for c in book.chapters if c.spin_history]
        self._events.emit(
            EventKind.WORKFLOW_COMPLETED,
            book_id     = book.id,
            chapters    = len(book.chapters),
            processed   = session.processed,
            skipped     = session.skipped,
            mean_reward = sum(rewards) / len(rewards) if rewards else 0.0,
        )
        self._log(
            f"Workflow completado: {session.processed} capítulos procesados, "
            f"{session.skipped} saltados"
        )

    async def _finish_cancelled(self, session: WorkflowSession, reason: WorkflowInterrupted) -> None:
        book = session.book
        await self._store.store_book(book)
        if session.options.learning_enabled:
            await self._store.save_value_table(self._engine.export_table())
        self._events.emit(
            EventKind.WORKFLOW_CANCELLED,
            book_id=book.id, processed=session.processed, reason=reason.detail,
        )
        self._log(f"Workflow cancelado tras {session.processed} capítulos")

    def _fail(self, session: WorkflowSession, error: Exception) -> None:
        session.error = f"{type(error).__name__}: {error}"
        self._update_state(session, error=session.error)
        logger.error("Workflow %s abortado: %s", session.book.id, session.error)
        self._events.emit(EventKind.WORKFLOW_ERROR, book_id=session.book.id, error=session.error)
        self._log(f"⚠ Workflow abortado: {session.error}")

    # ------------------------------------------------------------------
    # Helpers privados
    # ------------------------------------------------------------------

    async def _load_value_table(self, options: WorkflowOptions) -> None:
        """La tabla aprendida en runs anteriores se carga una vez por orchestrator."""
        if self._value_table_loaded or not options.learning_enabled:
            return
        entries = await self._store.load_value_table()
        if entries:
            self._engine.import_table(entries)
            logger.info("Tabla de valores cargada: %d entradas", len(entries))
        self._value_table_loaded = True

    async def _find_book(self, book_id: str) -> Optional[Book]:
        session = self._session
        if session is not None and session.book.id == book_id:
            return session.book
        return await self._store.get_book(book_id)

    def _advance(self, session: WorkflowSession, chapter: Chapter, status: ChapterStatus) -> None:
        chapter.advance_to(status)
        self._update_state(session, current_stage=status)

    def _active_session(self) -> Optional[WorkflowSession]:
        with self._lock:
            session = self._session
        if session is None or not session.active:
            return None
        return session

    def _close_chapters(self, chapter_ids: list[str]) -> None:
        """El feedback que llegue para estos capítulos ya no se consume."""
        with self._lock:
            self._closed_chapters.update(chapter_ids)
        self._rendezvous.discard(chapter_ids)

    def _update_state(self, session: WorkflowSession, **changes: Any) -> None:
        with self._lock:
            for name, value in changes.items():
                setattr(session.state, name, value)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        """Tarea supervisada: se retiene hasta terminar y sus fallos quedan en el log."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)

        def _finished(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                logger.debug("Tarea %s cancelada", name)
            elif t.exception() is not None:
                logger.error("Tarea %s falló", name, exc_info=t.exception())

        task.add_done_callback(_finished)
        return task

    @staticmethod
    def _log(message: str) -> None:
        print(f"[bookflow] {message}")


# ------------------------------------------------------------------
# Funciones de módulo (helpers privados)
# ------------------------------------------------------------------

def _validate_start(source_ref: str, options: WorkflowOptions) -> None:
    if not source_ref or not source_ref.strip():
        raise ValidationFailure("source_ref no puede estar vacío")
    if options.chapter_count < 1:
        raise ValidationFailure(f"chapter_count debe ser >= 1 (recibido {options.chapter_count})")
    if options.feedback_timeout is not None and options.feedback_timeout < 0:
        raise ValidationFailure("feedback_timeout no puede ser negativo")
