import time
from abc import ABC, abstractmethod

from bookflow.router.models import AgentConfig, ProviderConfig, ProviderResponse


class BaseProvider(ABC):
    """
    Contrato de un proveedor de texto generativo.
    El Router elige el proveedor por nombre según la config de cada agente.
    """

    def __init__(self, config: ProviderConfig):
        self._config = config

    @property
    def name(self) -> str:
        return self._config.name

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt:   str,
        agent:         AgentConfig,
    ) -> ProviderResponse:
        """Genera texto con el modelo y la temperatura del agente."""
        ...

    def is_available(self) -> bool:
        """False mientras dure el cooldown tras un error de cuota o red."""
        if self._config._unavailable_until is None:
            return True
        if time.time() < self._config._unavailable_until:
            return False
        self._config._unavailable_until = None   # cooldown expirado
        return True

    def _start_cooldown(self) -> None:
        self._config._unavailable_until = time.time() + self._config.cooldown_seconds
