# router/router.py
import logging

from bookflow.errors import GenerationFailure
from bookflow.router.base import BaseProvider
from bookflow.router.models import AgentConfig, ProviderResponse

logger = logging.getLogger(__name__)


class Router:
    """
    Despacha cada generación al proveedor que nombra la config del agente.
    No hay failover entre proveedores: cada agente tiene el suyo y un fallo
    se propaga como GenerationFailure para que el pipeline no haga commit.
    """

    def __init__(self, providers: list[BaseProvider]):
        if not providers:
            raise ValueError("El Router necesita al menos un proveedor.")
        self._providers = {p.name: p for p in providers}

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    def supports(self, agent: AgentConfig) -> bool:
        return agent.provider in self._providers

    async def generate(
        self,
        agent:         AgentConfig,
        system_prompt: str,
        user_prompt:   str,
    ) -> ProviderResponse:
        provider = self._providers.get(agent.provider)
        if provider is None:
            raise GenerationFailure(
                f"Proveedor '{agent.provider}' no configurado para {agent.name}. "
                f"Disponibles: {', '.join(self._providers)}"
            )

        if not provider.is_available():
            raise GenerationFailure(
                f"Proveedor '{provider.name}' en cooldown, {agent.name} no puede generar."
            )

        logger.info("%s → %s (%s)", agent.name, provider.name, agent.model)

        try:
            return await provider.generate(system_prompt, user_prompt, agent)
        except GenerationFailure:
            raise
        except (ConnectionError, TimeoutError, ValueError) as e:
            logger.warning("%s falló en %s: %s", agent.name, provider.name, e)
            raise GenerationFailure(f"{provider.name}: {e}") from e
