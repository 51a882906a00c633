# agents/agent.py
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from bookflow.agents.prompt_builder import build_user_prompt, system_prompt_for
from bookflow.agents.quality import assess_content_quality, feedback_score
from bookflow.learning.reward import RewardWeights, calculate_reward
from bookflow.models import AgentRole, HumanFeedback, RewardObservation, SpinRecord
from bookflow.router.models import AgentConfig
from bookflow.router.router import Router

if TYPE_CHECKING:
    from bookflow.control import WorkflowControl

logger = logging.getLogger(__name__)

_MAX_TEMPERATURE = 1.0


@dataclass(frozen=True)
class SpinOutcome:
    record:      SpinRecord
    observation: RewardObservation


class Agent:
    """Un rol del pipeline: construye el prompt, llama al proveedor y puntúa la salida."""

    def __init__(
        self,
        config:  AgentConfig,
        router:  Router,
        weights: RewardWeights = RewardWeights(),
    ):
        self.config   = config
        self._router  = router
        self._weights = weights
        self._rewards: list[float] = []

    @property
    def role(self) -> AgentRole:
        return self.config.role

    @property
    def average_reward(self) -> Optional[float]:
        """Media de recompensas de las pasadas confirmadas. None si aún no hay."""
        if not self._rewards:
            return None
        return sum(self._rewards) / len(self._rewards)

    async def spin(
        self,
        content:    str,
        feedback:   Iterable[HumanFeedback] = (),
        control:    Optional["WorkflowControl"] = None,
        subject_id: str = "",
    ) -> SpinOutcome:
        feedback = list(feedback)
        system   = system_prompt_for(self.role)
        prompt   = build_user_prompt(self.role, content, feedback, self.config.instruction)

        started = time.perf_counter()
        call    = self._router.generate(self.config, system, prompt)
        response = await (control.guard(call) if control else call)
        elapsed_ms = (time.perf_counter() - started) * 1000

        quality = assess_content_quality(content, response.text)
        reward  = calculate_reward(
            quality            = quality,
            feedback           = feedback_score(feedback),
            processing_time_ms = elapsed_ms,
            error_rate         = 0.0,
            weights            = self._weights,
        )

        record = SpinRecord(
            role     = self.role,
            model    = self.config.model,
            prompt   = prompt,
            response = response.text,
            reward   = reward,
            metadata = {
                "processing_time_ms": elapsed_ms,
                "input_length":       len(content),
                "output_length":      len(response.text),
                "temperature":        self.config.temperature,
                "quality":            quality,
                "provider":           response.provider,
                "tokens_input":       response.tokens_input,
                "tokens_output":      response.tokens_output,
            },
        )
        observation = RewardObservation(
            subject_id = subject_id,
            action     = f"{self.role.value}_spin",
            reward     = reward,
            state      = {
                "role":         self.role.value,
                "model":        self.config.model,
                "input_length": len(content),
            },
            next_state = {
                "output_length": len(response.text),
                "quality":       quality,
                "completed":     True,
            },
        )

        logger.debug(
            "%s: quality=%.1f reward=%.1f (%.0f ms)",
            self.config.name, quality, reward, elapsed_ms,
        )
        return SpinOutcome(record=record, observation=observation)

    def note_reward(self, reward: float) -> None:
        self._rewards.append(reward)

    def raise_temperature(self, step: float = 0.1) -> float:
        self.config.temperature = min(_MAX_TEMPERATURE, round(self.config.temperature + step, 4))
        return self.config.temperature
