# tests/test_orchestrator.py
import asyncio
import random
from pathlib import Path

import pytest

from bookflow.errors import ConflictError, GenerationFailure, ValidationFailure
from bookflow.events import EventKind
from bookflow.factory import build_orchestrator
from bookflow.models import AgentRole, ChapterStatus, HumanFeedback, WorkflowOptions
from bookflow.router import AgentConfig, BookflowConfig, ProviderConfig, ProviderResponse, Router
from bookflow.router.base import BaseProvider
from bookflow.storage import Repository
from bookflow.voice import parse_transcript


# ------------------------------------------------------------------
# Fakes y fixtures
# ------------------------------------------------------------------

BOOK_TEXT = """El faro

Chapter 1
The keeper climbed the stairs every night to light the lamp for the boats.

Chapter 2
A storm came from the west and the fishermen waited on the pier until dawn.
"""


class FakeProvider(BaseProvider):

    def __init__(self, fail_on=None):
        super().__init__(ProviderConfig(name="fake", api_key="test"))
        self.calls:   list[tuple[AgentRole, str]] = []
        self._fail_on = fail_on

    async def generate(self, system_prompt, user_prompt, agent):
        self.calls.append((agent.role, user_prompt))
        if agent.role is self._fail_on:
            raise GenerationFailure(f"{agent.name} falló")
        return ProviderResponse(
            text     = f"Texto del {agent.role.value} sobre el faro. " * 4,
            provider = self.name,
            model    = agent.model,
        )


def make_config() -> BookflowConfig:
    return BookflowConfig(
        providers = [],
        agents    = [
            AgentConfig(name="Escritor", role=AgentRole.WRITER,   provider="fake", model="m-w", temperature=0.8),
            AgentConfig(name="Revisor",  role=AgentRole.REVIEWER, provider="fake", model="m-r", temperature=0.3),
            AgentConfig(name="Editor",   role=AgentRole.EDITOR,   provider="fake", model="m-e", temperature=0.2),
        ],
        feedback_timeout = 0.05,
    )


@pytest.fixture
def book_file(tmp_path) -> Path:
    f = tmp_path / "faro.txt"
    f.write_text(BOOK_TEXT, encoding="utf-8")
    return f


@pytest.fixture
def make_orchestrator():
    """Fábrica de orchestrators con router falso; los cierra al terminar."""
    created = []

    def _make(provider=None, db_path=":memory:"):
        orchestrator = build_orchestrator(
            db_path = db_path,
            config  = make_config(),
            router  = Router([provider or FakeProvider()]),
            rng     = random.Random(0),
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        asyncio.run(orchestrator.close())


def on(kind, action, chapter_index=None):
    """Listener que ejecuta `action(event)` solo para un tipo de evento (y capítulo)."""
    def _listener(event):
        if event.kind is not kind:
            return
        if chapter_index is not None and event.payload.get("chapter_index") != chapter_index:
            return
        action(event)
    return _listener


def run_workflow(orchestrator, source, *listeners, **options):
    """Lanza el workflow, espera a que termine y devuelve el export del libro."""
    for listener in listeners:
        orchestrator.events.add_listener(listener)

    async def scenario():
        book_id = await orchestrator.start_workflow(str(source), WorkflowOptions(**options))
        await orchestrator.wait_for_completion(timeout=5)
        return await orchestrator.export_book(book_id)

    return asyncio.run(scenario())


def kinds(orchestrator):
    return [e.kind for e in orchestrator.events.history()]


def make_feedback(chapter_id, rating, comment="Falta tensión"):
    return HumanFeedback(
        chapter_id = chapter_id,
        user_id    = "ana",
        role       = AgentRole.REVIEWER,
        comment    = comment,
        rating     = rating,
    )


# ------------------------------------------------------------------
# Run completo
# ------------------------------------------------------------------

class TestWorkflowCompleto:

    def test_dos_capitulos_aprobados(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        export = run_workflow(orchestrator, book_file, chapter_count=2)

        book, stats = export["book"], export["stats"]
        assert book.title == "El faro"
        assert [c.status for c in book.chapters] == [ChapterStatus.APPROVED] * 2
        assert [c.version for c in book.chapters] == [2, 2]
        assert stats["approved_chapters"] == 2
        assert stats["total_versions"] == 6
        assert stats["mean_reward"] > 0

    def test_el_contenido_final_es_del_editor_y_el_original_se_conserva(self, make_orchestrator, book_file):
        export  = run_workflow(make_orchestrator(), book_file, chapter_count=1)
        chapter = export["book"].chapters[0]

        assert chapter.content.startswith("Texto del editor")
        assert "keeper climbed" in chapter.original_content

    def test_estado_final(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        assert orchestrator.get_workflow_status() is None

        run_workflow(orchestrator, book_file, chapter_count=2)
        state = orchestrator.get_workflow_status()

        assert state.active is False
        assert state.error is None
        assert state.current_chapter == 2
        assert state.total_chapters == 2
        assert state.current_stage is ChapterStatus.APPROVED

    def test_secuencia_de_eventos(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        run_workflow(orchestrator, book_file, chapter_count=1)

        assert kinds(orchestrator) == [
            EventKind.WORKFLOW_STARTED,
            EventKind.STAGE_STARTED,
            EventKind.STAGE_COMPLETED,
            EventKind.CHAPTER_PROCESSING_STARTED,
            EventKind.CHAPTER_PROCESSING_COMPLETED,
            EventKind.WORKFLOW_COMPLETED,
        ]

    def test_capitulos_buscables_tras_el_run(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        run_workflow(orchestrator, book_file, chapter_count=2)

        result = asyncio.run(orchestrator.search_content("editor faro"))

        assert len(result["chapters"]) == 2
        assert result["relevance_score"] == 1.0
        assert result["chapters"][0].metadata["status"] == "approved"

    def test_busqueda_vacia_lanza(self, make_orchestrator):
        with pytest.raises(ValidationFailure):
            asyncio.run(make_orchestrator().search_content("  "))

    def test_fragmento_del_contenido_encuentra_el_capitulo(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        chapter      = run_workflow(orchestrator, book_file, chapter_count=1)["book"].chapters[0]

        for fragment in (chapter.content[1:4], chapter.content[:30], "xto del edito"):
            hits = asyncio.run(orchestrator.search_content(fragment))["chapters"]
            assert hits, fragment
            assert hits[0].id == chapter.id
            assert hits[0].distance < 0.5

    def test_capitulos_similares_y_versiones(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        uno, dos     = run_workflow(orchestrator, book_file, chapter_count=2)["book"].chapters

        similar  = asyncio.run(orchestrator.similar_chapters(uno.id))
        versions = asyncio.run(orchestrator.chapter_versions(uno.id))

        assert [h.id for h in similar] == [dos.id]
        assert [v.role for v in versions] == [AgentRole.WRITER, AgentRole.REVIEWER, AgentRole.EDITOR]

    def test_similares_con_limite_invalido(self, make_orchestrator):
        with pytest.raises(ValidationFailure):
            asyncio.run(make_orchestrator().similar_chapters("cap", limit=0))

    def test_el_motor_aprende_de_adquisicion_y_spins(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        run_workflow(orchestrator, book_file, chapter_count=2)

        metrics = asyncio.run(orchestrator.get_performance_metrics())

        # 2 scrape_content + 2 × 3 spins
        assert metrics["reward_stats"]["total_observations"] == 8
        assert metrics["content_stats"]["total_chapters"] == 2
        assert metrics["processing_stats"]["current_workflow"]["active"] is False
        assert metrics["processing_stats"]["queued_feedback"] == 0
        assert "epsilon" in metrics["processing_stats"]["learning_parameters"]

    def test_sin_aprendizaje_no_registra_observaciones(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        run_workflow(orchestrator, book_file, chapter_count=1, learning_enabled=False)

        metrics = asyncio.run(orchestrator.get_performance_metrics())
        assert metrics["reward_stats"]["total_observations"] == 0

    def test_la_tabla_de_valores_se_persiste(self, make_orchestrator, book_file, tmp_path):
        db_path = str(tmp_path / "bookflow.db")
        run_workflow(make_orchestrator(db_path=db_path), book_file, chapter_count=1)

        repo = Repository(db_path=db_path)
        try:
            actions = {e.action for e in repo.load_value_table()}
        finally:
            repo.close()
        assert actions == {"scrape_content", "writer_spin", "reviewer_spin", "editor_spin"}

    def test_export_desde_el_almacen_en_otro_orchestrator(self, make_orchestrator, book_file, tmp_path):
        db_path = str(tmp_path / "bookflow.db")
        book_id = run_workflow(make_orchestrator(db_path=db_path), book_file, chapter_count=2)["book"].id

        export = asyncio.run(make_orchestrator(db_path=db_path).export_book(book_id))

        assert export["stats"]["approved_chapters"] == 2
        assert export["stats"]["total_versions"] == 6

    def test_export_de_libro_desconocido(self, make_orchestrator):
        with pytest.raises(ValidationFailure):
            asyncio.run(make_orchestrator().export_book("no-existe"))


# ------------------------------------------------------------------
# Validación y concurrencia
# ------------------------------------------------------------------

class TestStartWorkflow:

    @pytest.mark.parametrize("source, options", [
        ("",         WorkflowOptions()),
        ("   ",      WorkflowOptions()),
        ("faro.txt", WorkflowOptions(chapter_count=0)),
        ("faro.txt", WorkflowOptions(feedback_timeout=-1)),
    ])
    def test_entradas_invalidas(self, make_orchestrator, source, options):
        with pytest.raises(ValidationFailure):
            asyncio.run(make_orchestrator().start_workflow(source, options))

    def test_un_solo_run_activo(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()

        async def scenario():
            await orchestrator.start_workflow(str(book_file))
            with pytest.raises(ConflictError):
                await orchestrator.start_workflow(str(book_file))
            await orchestrator.wait_for_completion(timeout=5)

            # Terminado el anterior, se puede lanzar otro
            await orchestrator.start_workflow(str(book_file))
            return await orchestrator.wait_for_completion(timeout=5)

        state = asyncio.run(scenario())
        assert state.error is None

    def test_start_devuelve_sin_esperar_al_run(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()

        async def scenario():
            book_id = await orchestrator.start_workflow(str(book_file))
            state   = orchestrator.get_workflow_status()
            await orchestrator.wait_for_completion(timeout=5)
            return book_id, state

        book_id, state = asyncio.run(scenario())
        assert state.book_id == book_id
        assert state.active is True

    def test_sin_run_los_controles_devuelven_false(self, make_orchestrator):
        orchestrator = make_orchestrator()
        assert orchestrator.pause_workflow() is False
        assert orchestrator.resume_workflow() is False
        assert orchestrator.skip_chapter() is False
        assert orchestrator.cancel_workflow() is False


# ------------------------------------------------------------------
# Feedback humano
# ------------------------------------------------------------------

class TestHumanInLoop:

    def test_rating_bajo_pide_una_pasada_extra(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        submit = on(
            EventKind.HUMAN_FEEDBACK_REQUESTED,
            lambda e: orchestrator.submit_feedback(make_feedback(e.payload["chapter_id"], rating=3)),
        )

        export  = run_workflow(orchestrator, book_file, submit, human_in_loop=True, feedback_timeout=1)
        chapter = export["book"].chapters[0]

        assert chapter.version == 3
        assert len(chapter.spin_history) == 6
        assert [f.rating for f in chapter.human_feedback] == [3]
        assert chapter.status is ChapterStatus.APPROVED
        assert EventKind.HUMAN_FEEDBACK_RECEIVED in kinds(orchestrator)

    def test_la_pasada_extra_lleva_el_feedback_en_el_prompt(self, make_orchestrator, book_file):
        provider     = FakeProvider()
        orchestrator = make_orchestrator(provider)
        submit = on(
            EventKind.HUMAN_FEEDBACK_REQUESTED,
            lambda e: orchestrator.submit_feedback(make_feedback(e.payload["chapter_id"], 2, "Más diálogo")),
        )

        run_workflow(orchestrator, book_file, submit, human_in_loop=True, feedback_timeout=1)

        prompts = [prompt for _, prompt in provider.calls]
        assert not any("Más diálogo" in p for p in prompts[:3])
        assert all("Más diálogo" in p for p in prompts[3:])

    def test_rating_alto_no_repite(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        submit = on(
            EventKind.HUMAN_FEEDBACK_REQUESTED,
            lambda e: orchestrator.submit_feedback(make_feedback(e.payload["chapter_id"], rating=9)),
        )

        export = run_workflow(orchestrator, book_file, submit, human_in_loop=True, feedback_timeout=1)

        chapter = export["book"].chapters[0]
        assert chapter.version == 2
        assert len(chapter.human_feedback) == 1

    def test_sin_feedback_se_continua_tras_el_timeout(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        export = run_workflow(orchestrator, book_file, human_in_loop=True, feedback_timeout=0.05)

        chapter = export["book"].chapters[0]
        assert chapter.status is ChapterStatus.APPROVED
        assert chapter.version == 2
        assert chapter.human_feedback == []
        assert EventKind.HUMAN_FEEDBACK_REQUESTED in kinds(orchestrator)
        assert EventKind.HUMAN_FEEDBACK_RECEIVED not in kinds(orchestrator)

    def test_feedback_previo_se_usa_desde_la_primera_pasada(self, make_orchestrator, book_file):
        provider     = FakeProvider()
        orchestrator = make_orchestrator(provider)
        seed = on(
            EventKind.CHAPTER_PROCESSING_STARTED,
            lambda e: orchestrator.submit_feedback(make_feedback(e.payload["chapter_id"], 8, "Tono sombrío")),
        )

        export = run_workflow(orchestrator, book_file, seed, human_in_loop=True, feedback_timeout=0.05)

        assert all("Tono sombrío" in prompt for _, prompt in provider.calls)
        assert [f.comment for f in export["book"].chapters[0].human_feedback] == ["Tono sombrío"]

    def test_sin_human_in_loop_no_se_pide_feedback(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        run_workflow(orchestrator, book_file)
        assert EventKind.HUMAN_FEEDBACK_REQUESTED not in kinds(orchestrator)

    def test_feedback_tardio_no_se_queda_en_el_buzon(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        late = on(
            EventKind.CHAPTER_PROCESSING_COMPLETED,
            lambda e: orchestrator.submit_feedback(make_feedback(e.payload["chapter_id"], rating=2)),
        )

        export  = run_workflow(orchestrator, book_file, late, human_in_loop=True, feedback_timeout=0.05)
        chapter = export["book"].chapters[0]
        orchestrator.submit_feedback(make_feedback(chapter.id, rating=1))

        metrics = asyncio.run(orchestrator.get_performance_metrics())
        assert metrics["processing_stats"]["queued_feedback"] == 0
        assert chapter.human_feedback == []
        assert chapter.version == 2

    def test_feedback_sin_capitulo_lanza(self, make_orchestrator):
        with pytest.raises(ValidationFailure):
            make_orchestrator().submit_feedback(make_feedback("", rating=5))


# ------------------------------------------------------------------
# Comandos de voz
# ------------------------------------------------------------------

class TestHandleCommand:

    def test_sin_run_activo_lanza(self, make_orchestrator):
        with pytest.raises(ValidationFailure):
            make_orchestrator().handle_command(parse_transcript("approve"))

    def test_voz_deshabilitada_lanza(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        errors = []

        def try_command(event):
            try:
                orchestrator.handle_command(parse_transcript("pause workflow"))
            except ValidationFailure as e:
                errors.append(e)

        run_workflow(orchestrator, book_file, on(EventKind.CHAPTER_PROCESSING_STARTED, try_command))
        assert len(errors) == 1

    def test_reject_por_voz_fuerza_otra_pasada(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        created = []
        reject = on(
            EventKind.HUMAN_FEEDBACK_REQUESTED,
            lambda e: created.append(orchestrator.handle_command(parse_transcript("reject"))),
        )

        export = run_workflow(
            orchestrator, book_file, reject,
            human_in_loop=True, voice_enabled=True, feedback_timeout=1,
        )

        chapter = export["book"].chapters[0]
        assert chapter.version == 3
        assert created[0].rating == 0.0
        assert created[0].user_id == "voice_user"
        assert created[0].chapter_id == chapter.id

    def test_rate_por_voz_usa_el_rating(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        created = []
        rate = on(
            EventKind.HUMAN_FEEDBACK_REQUESTED,
            lambda e: created.append(orchestrator.handle_command(parse_transcript("rate 8"))),
        )

        export = run_workflow(
            orchestrator, book_file, rate,
            human_in_loop=True, voice_enabled=True, feedback_timeout=1,
        )

        assert created[0].rating == 8.0
        assert export["book"].chapters[0].version == 2

    def test_pausa_y_reanudacion_por_voz(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()

        def pause_then_resume(event):
            assert orchestrator.handle_command(parse_transcript("pause workflow")) is None
            asyncio.get_running_loop().call_later(
                0.05, orchestrator.handle_command, parse_transcript("resume workflow"),
            )

        export = run_workflow(
            orchestrator, book_file,
            on(EventKind.CHAPTER_PROCESSING_STARTED, pause_then_resume),
            voice_enabled=True,
        )

        history = kinds(orchestrator)
        assert history.index(EventKind.WORKFLOW_PAUSED) < history.index(EventKind.WORKFLOW_RESUMED)
        assert export["stats"]["approved_chapters"] == 1
        assert orchestrator.get_workflow_status().paused is False


# ------------------------------------------------------------------
# Skip, cancel y errores
# ------------------------------------------------------------------

class TestInterrupciones:

    def test_skip_abandona_solo_ese_capitulo(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        skip = on(
            EventKind.CHAPTER_PROCESSING_STARTED,
            lambda e: orchestrator.skip_chapter("prefacio"),
            chapter_index=1,
        )

        export = run_workflow(orchestrator, book_file, skip, chapter_count=2)

        first, second = export["book"].chapters
        assert first.version == 1
        assert first.status is ChapterStatus.TRANSFORMING
        assert second.status is ChapterStatus.APPROVED

        skipped = orchestrator.events.history(EventKind.CHAPTER_SKIPPED)
        assert [e.payload["reason"] for e in skipped] == ["prefacio"]
        assert orchestrator.get_workflow_status().error is None

    def test_cancel_detiene_el_run_y_conserva_lo_hecho(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator()
        cancel = on(
            EventKind.CHAPTER_PROCESSING_COMPLETED,
            lambda e: orchestrator.cancel_workflow(),
            chapter_index=1,
        )

        export = run_workflow(orchestrator, book_file, cancel, chapter_count=2)

        first, second = export["book"].chapters
        assert first.status is ChapterStatus.APPROVED
        assert second.version == 1
        assert EventKind.WORKFLOW_CANCELLED in kinds(orchestrator)
        assert EventKind.WORKFLOW_COMPLETED not in kinds(orchestrator)

        state = orchestrator.get_workflow_status()
        assert state.active is False
        assert state.error is None

    def test_fallo_de_generacion_emite_un_error(self, make_orchestrator, book_file):
        orchestrator = make_orchestrator(FakeProvider(fail_on=AgentRole.EDITOR))
        export = run_workflow(orchestrator, book_file, chapter_count=2)

        errors = orchestrator.events.history(EventKind.WORKFLOW_ERROR)
        assert len(errors) == 1
        assert errors[0].payload["error"].startswith("GenerationFailure")

        state = orchestrator.get_workflow_status()
        assert state.active is False
        assert state.error.startswith("GenerationFailure")

        # El capítulo que falló no tiene commit parcial
        assert [c.version for c in export["book"].chapters] == [1, 1]

    def test_fallo_de_adquisicion(self, make_orchestrator, tmp_path):
        orchestrator = make_orchestrator()
        run_workflow(orchestrator, tmp_path / "no-existe.txt")

        assert orchestrator.get_workflow_status().error.startswith("AcquisitionFailure")
        assert EventKind.WORKFLOW_ERROR in kinds(orchestrator)

    def test_tras_un_error_se_puede_lanzar_otro_run(self, make_orchestrator, book_file, tmp_path):
        orchestrator = make_orchestrator()
        run_workflow(orchestrator, tmp_path / "no-existe.txt")

        export = run_workflow(orchestrator, book_file)
        assert export["stats"]["approved_chapters"] == 1
        assert orchestrator.get_workflow_status().error is None
