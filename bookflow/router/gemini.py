# router/gemini.py
import logging

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from bookflow.errors import GenerationFailure
from bookflow.router.base import BaseProvider
from bookflow.router.models import AgentConfig, ProviderConfig, ProviderResponse

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    google_exceptions.ResourceExhausted,   # 429
    google_exceptions.DeadlineExceeded,    # timeout
    google_exceptions.ServiceUnavailable,
)


class GeminiAdapter(BaseProvider):

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        genai.configure(api_key=config.api_key)

    async def generate(
        self,
        system_prompt: str,
        user_prompt:   str,
        agent:         AgentConfig,
    ) -> ProviderResponse:
        # Un GenerativeModel por llamada: modelo y temperatura dependen del agente
        model = genai.GenerativeModel(
            model_name         = agent.model,
            system_instruction = system_prompt,
            generation_config  = genai.GenerationConfig(
                temperature       = agent.temperature,
                max_output_tokens = agent.max_output_tokens,
            ),
        )

        try:
            response = await model.generate_content_async(
                user_prompt,
                request_options={"timeout": self._config.timeout_seconds},
            )
            text = response.text
        except _RETRYABLE_ERRORS as e:
            logger.warning("Gemini error retryable: %s", e)
            self._start_cooldown()
            raise GenerationFailure(f"Gemini no disponible: {e}") from e

        except google_exceptions.GoogleAPIError as e:
            logger.error("Gemini rechazó la petición de %s: %s", agent.name, e)
            raise GenerationFailure(f"Gemini rechazó la petición: {e}") from e

        except ValueError as e:
            # response.text lanza ValueError si la respuesta fue bloqueada
            raise GenerationFailure(f"Gemini no devolvió texto: {e}") from e

        usage = response.usage_metadata
        return ProviderResponse(
            text          = text,
            provider      = self.name,
            model         = agent.model,
            tokens_input  = usage.prompt_token_count,
            tokens_output = usage.candidates_token_count,
        )
