# bookflow/factory.py
import logging
import random
from typing import Optional

from bookflow.acquisition import FileSource, SourceDispatcher, WebSource
from bookflow.agents import Agent, MultiAgentPipeline
from bookflow.events import EventChannel
from bookflow.feedback import FeedbackRendezvous
from bookflow.learning import RewardEngine
from bookflow.orchestrator import WorkflowOrchestrator
from bookflow.router import BookflowConfig, Router, load_config
from bookflow.router.base import BaseProvider
from bookflow.router.claude import ClaudeAdapter
from bookflow.router.gemini import GeminiAdapter
from bookflow.storage import Repository, SqliteContentStore

logger = logging.getLogger(__name__)

_ADAPTERS: dict[str, type[BaseProvider]] = {
    "claude": ClaudeAdapter,
    "gemini": GeminiAdapter,
}


def build_orchestrator(
    db_path:     Optional[str] = None,
    config_path: Optional[str] = None,
    config:      Optional[BookflowConfig] = None,
    router:      Optional[Router] = None,
    rng:         Optional[random.Random] = None,
) -> WorkflowOrchestrator:
    """
    Ensambla el WorkflowOrchestrator con todas sus dependencias.
    Punto de entrada único para el CLI y los tests de integración.

    `router` permite inyectar proveedores propios (tests, proveedores locales);
    sin él se construyen los adaptadores desde la config.
    """
    config = config or load_config(config_path)
    router = router or Router(_build_providers(config))

    for agent_cfg in config.agents:
        if not router.supports(agent_cfg):
            logger.warning(
                "%s usa el proveedor '%s', que no está disponible",
                agent_cfg.name, agent_cfg.provider,
            )

    engine = RewardEngine(
        learning_rate   = config.learning.learning_rate,
        discount_factor = config.learning.discount_factor,
        epsilon         = config.learning.epsilon,
        thresholds      = config.learning.thresholds,
        rng             = rng,
    )
    agents   = [Agent(cfg, router, config.reward_weights) for cfg in config.agents]
    pipeline = MultiAgentPipeline(agents, engine)

    return WorkflowOrchestrator(
        acquisition      = SourceDispatcher(FileSource(), WebSource()),
        pipeline         = pipeline,
        engine           = engine,
        rendezvous       = FeedbackRendezvous(),
        store            = SqliteContentStore(Repository(db_path=db_path)),
        events           = EventChannel(),
        feedback_timeout = config.feedback_timeout,
    )


def _build_providers(config: BookflowConfig) -> list[BaseProvider]:
    """
    Construye los adaptadores con api_key configurada.
    Los que no tienen clave se omiten con aviso.
    """
    providers = []
    for provider_cfg in config.providers:
        adapter_class = _ADAPTERS.get(provider_cfg.name)
        if not adapter_class:
            logger.warning("Proveedor desconocido en la config: %s", provider_cfg.name)
            continue
        if not provider_cfg.api_key:
            print(f"[bookflow] ⚠ {provider_cfg.name}: sin api_key, omitiendo")
            continue
        providers.append(adapter_class(provider_cfg))

    if not providers:
        raise RuntimeError(
            "Ningún proveedor configurado. "
            "Revisa ~/.bookflow/config.yaml y tus variables de entorno."
        )
    return providers
