# router/claude.py
import logging

import anthropic

from bookflow.errors import GenerationFailure
from bookflow.router.base import BaseProvider
from bookflow.router.models import AgentConfig, ProviderConfig, ProviderResponse

logger = logging.getLogger(__name__)

# Errores de disponibilidad: activan cooldown del proveedor
_RETRYABLE_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APITimeoutError,
    anthropic.APIConnectionError,
)


class ClaudeAdapter(BaseProvider):

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._client = anthropic.AsyncAnthropic(
            api_key = config.api_key,
            timeout = config.timeout_seconds,
        )

    async def generate(
        self,
        system_prompt: str,
        user_prompt:   str,
        agent:         AgentConfig,
    ) -> ProviderResponse:
        try:
            response = await self._client.messages.create(
                model       = agent.model,
                max_tokens  = agent.max_output_tokens,
                temperature = agent.temperature,
                system      = system_prompt,
                messages    = [{"role": "user", "content": user_prompt}],
            )
        except _RETRYABLE_ERRORS as e:
            logger.warning("Claude error retryable: %s", e)
            self._start_cooldown()
            raise GenerationFailure(f"Claude no disponible: {e}") from e

        except anthropic.APIError as e:
            # BadRequest, auth, contenido bloqueado... no es de disponibilidad
            logger.error("Claude rechazó la petición de %s: %s", agent.name, e)
            raise GenerationFailure(f"Claude rechazó la petición: {e}") from e

        text = "".join(
            block.text for block in response.content
            if getattr(block, "type", "text") == "text"
        )

        return ProviderResponse(
            text          = text,
            provider      = self.name,
            model         = agent.model,
            tokens_input  = response.usage.input_tokens,
            tokens_output = response.usage.output_tokens,
        )
