# bookflow/cli.py
import asyncio
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from bookflow.errors import BookflowError, ValidationFailure
from bookflow.events import EventKind, WorkflowEvent
from bookflow.factory import build_orchestrator
from bookflow.models import WorkflowOptions, WorkflowState
from bookflow.orchestrator import WorkflowOrchestrator
from bookflow.voice import parse_transcript


# Carga .env una sola vez, antes que cualquier otra cosa
load_dotenv()


# ------------------------------------------------------------------
# Grupo raíz
# ------------------------------------------------------------------

@click.group()
@click.version_option(package_name="bookflow")
@click.option("--config", "config_path", type=click.Path(), default=None,
              help="Ruta al config.yaml (por defecto ~/.bookflow/config.yaml)")
@click.option("--db", "db_path", type=click.Path(), default=None,
              help="Ruta a la base SQLite (por defecto ~/.bookflow/bookflow.db)")
@click.option("--verbose", "-v", is_flag=True, help="Log detallado (DEBUG)")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str], verbose: bool):
    """
    bookflow: reescritura de libros con agentes de IA.

    Adquiere capítulos, los pasa por escritor → revisor → editor,
    admite feedback humano y aprende de cada resultado.
    """
    logging.basicConfig(
        level  = logging.DEBUG if verbose else logging.WARNING,
        format = "%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": config_path, "db_path": db_path}


# ------------------------------------------------------------------
# bookflow run
# ------------------------------------------------------------------

@main.command()
@click.option("--source", "-s", required=True,
              help="URL del primer capítulo o ruta a un libro (.txt, .md, .epub, .pdf)")
@click.option("--chapters", "-n", default=1, show_default=True, type=int,
              help="Número de capítulos a procesar")
@click.option("--human-in-loop", is_flag=True,
              help="Pausa tras cada capítulo para recibir feedback humano")
@click.option("--voice", is_flag=True,
              help="Lee comandos (pause workflow, rate 8, feedback ...) desde stdin")
@click.option("--no-learning", is_flag=True,
              help="No alimenta el motor de recompensas")
@click.option("--feedback-timeout", type=float, default=None,
              help="Segundos de espera por feedback humano (por defecto, el de la config)")
@click.pass_obj
def run(
    obj:              dict,
    source:           str,
    chapters:         int,
    human_in_loop:    bool,
    voice:            bool,
    no_learning:      bool,
    feedback_timeout: Optional[float],
):
    """Ejecuta el workflow completo sobre una fuente."""

    # ── Validaciones de entrada ───────────────────────────────────
    _validate_source(source)
    if chapters < 1:
        _abort("--chapters debe ser al menos 1.")
    if feedback_timeout is not None and feedback_timeout < 0:
        _abort("--feedback-timeout no puede ser negativo.")

    options = WorkflowOptions(
        chapter_count    = chapters,
        human_in_loop    = human_in_loop,
        voice_enabled    = voice,
        learning_enabled = not no_learning,
        feedback_timeout = feedback_timeout,
    )

    orchestrator = _build(obj)

    # ── Ejecutar ──────────────────────────────────────────────────
    try:
        state, export = asyncio.run(_run_workflow(orchestrator, source, options))
    except ValidationFailure as e:
        _abort(str(e))
    except KeyboardInterrupt:
        click.echo("\n[bookflow] Proceso interrumpido.")
        sys.exit(0)

    # ── Resumen final ─────────────────────────────────────────────
    _print_summary(state, export)

    if state is not None and state.error:
        sys.exit(2 if state.error.startswith("GenerationFailure") else 1)


# ------------------------------------------------------------------
# bookflow search / export / metrics
# ------------------------------------------------------------------

@main.command()
@click.argument("query")
@click.option("--limit", default=10, show_default=True, type=int)
@click.pass_obj
def search(obj: dict, query: str, limit: int):
    """Busca capítulos procesados por texto."""
    if limit < 1:
        _abort("--limit debe ser al menos 1.")

    orchestrator = _build(obj)
    try:
        result = asyncio.run(_with_close(orchestrator, orchestrator.search_content(query, limit=limit)))
    except ValidationFailure as e:
        _abort(str(e))

    hits = result["chapters"]
    if not hits:
        click.echo("[bookflow] Sin resultados.")
        return

    click.echo(f"[bookflow] {len(hits)} resultados (relevancia media {result['relevance_score']:.2f})")
    for hit in hits:
        meta = hit.metadata
        click.echo(
            f"  {1 - hit.distance:.2f}  {meta.get('title')}  "
            f"(v{meta.get('version')}, reward {meta.get('reward_score', 0):.1f})  [{hit.id}]"
        )


@main.command()
@click.argument("book_id")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None,
              help="Escribe el texto final del libro en este archivo")
@click.pass_obj
def export(obj: dict, book_id: str, output: Optional[str]):
    """Exporta un libro procesado con sus estadísticas."""
    orchestrator = _build(obj)
    try:
        result = asyncio.run(_with_close(orchestrator, orchestrator.export_book(book_id)))
    except ValidationFailure as e:
        _abort(str(e))

    book, stats = result["book"], result["stats"]
    click.echo(f"[bookflow] '{book.title}' ({book.id})")
    for key, value in stats.items():
        click.echo(f"[bookflow]   {key:<24}: {_fmt(value)}")

    if output:
        text = "\n\n".join(f"{c.title}\n\n{c.content}" for c in book.chapters)
        Path(output).write_text(text, encoding="utf-8")
        click.echo(f"[bookflow]   Output: {output}")


@main.command()
@click.pass_obj
def metrics(obj: dict):
    """Estadísticas de recompensas y del almacén."""
    orchestrator = _build(obj)
    result = asyncio.run(_with_close(orchestrator, orchestrator.get_performance_metrics()))

    for section in ("reward_stats", "content_stats"):
        click.echo(f"[bookflow] {section}")
        for key, value in result[section].items():
            click.echo(f"[bookflow]   {key:<20}: {_fmt(value)}")


# ------------------------------------------------------------------
# Helpers privados
# ------------------------------------------------------------------

async def _run_workflow(
    orchestrator: WorkflowOrchestrator,
    source:       str,
    options:      WorkflowOptions,
) -> tuple[Optional[WorkflowState], Optional[dict]]:
    if options.human_in_loop:
        orchestrator.events.add_listener(_announce_feedback_request(options.voice_enabled))
    try:
        book_id = await orchestrator.start_workflow(source, options)
        if options.voice_enabled:
            _start_command_reader(orchestrator)
        state  = await orchestrator.wait_for_completion()
        export = await orchestrator.export_book(book_id)
        return state, export
    finally:
        await orchestrator.close()


async def _with_close(orchestrator: WorkflowOrchestrator, coro):
    try:
        return await coro
    finally:
        await orchestrator.close()


def _build(obj: dict) -> WorkflowOrchestrator:
    try:
        return build_orchestrator(db_path=obj.get("db_path"), config_path=obj.get("config_path"))
    except (FileNotFoundError, ValueError, RuntimeError) as e:
        _abort(str(e))


def _start_command_reader(orchestrator: WorkflowOrchestrator) -> None:
    """Hilo que lee transcripciones de stdin y las aplica como comandos."""

    def _read() -> None:
        for line in sys.stdin:
            command = parse_transcript(line)
            if command is None:
                click.echo("[bookflow] Comando no reconocido", err=True)
                continue
            try:
                orchestrator.handle_command(command)
            except BookflowError as e:
                click.echo(click.style(f"[bookflow] {e}", fg="yellow"), err=True)
                continue
            click.echo(f"[bookflow] → {command.action.value}")

    threading.Thread(target=_read, name="bookflow-commands", daemon=True).start()


def _announce_feedback_request(voice: bool):
    def _listener(event: WorkflowEvent) -> None:
        if event.kind is not EventKind.HUMAN_FEEDBACK_REQUESTED:
            return
        hint = "escribe 'approve', 'reject', 'rate N' o 'feedback ...'" if voice \
            else "usa --voice para responder desde la terminal"
        click.echo(f"[bookflow] Feedback para el capítulo {event.payload['chapter_index']}: {hint}")
    return _listener


def _validate_source(source: str) -> None:
    if not source.strip():
        _abort("--source no puede estar vacío.")
    if source.lower().startswith(("http://", "https://")):
        return
    path = Path(source.split("#", 1)[0])
    if not path.exists():
        _abort(f"Archivo no encontrado: {path}")
    if path.suffix.lower() not in {".txt", ".md", ".epub", ".pdf"}:
        _abort(f"Formato '{path.suffix}' no soportado. Usa .txt, .md, .epub o .pdf.")


def _print_summary(state: Optional[WorkflowState], export: Optional[dict]) -> None:
    """Imprime el resumen final del workflow."""
    click.echo("")
    click.echo("─" * 50)
    if state is None or export is None:
        click.echo("[bookflow] ⚠ No hubo ejecución")
        click.echo("─" * 50)
        return

    book, stats = export["book"], export["stats"]
    if state.error:
        click.echo(click.style(f"[bookflow] ⚠ Workflow abortado: {state.error}", fg="red"))
    else:
        click.echo("[bookflow] ✓ Workflow completado")
    click.echo(f"[bookflow]   Libro        : {book.title} ({book.id})")
    click.echo(f"[bookflow]   Capítulos    : {stats['approved_chapters']}/{stats['total_chapters']} aprobados")
    click.echo(f"[bookflow]   Reward medio : {stats['mean_reward']:.1f}")
    click.echo(f"[bookflow]   Lectura      : ~{stats['estimated_reading_time']:.1f} min")
    click.echo("─" * 50)


def _fmt(value) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def _abort(message: str) -> None:
    """Error de validación: culpa del usuario."""
    click.echo(click.style(f"[bookflow] Error: {message}", fg="red"), err=True)
    sys.exit(1)
