# agents/pipeline.py
import logging
from typing import TYPE_CHECKING, Iterable, Optional

from bookflow.agents.agent import Agent, SpinOutcome
from bookflow.learning.reward_engine import RewardEngine
from bookflow.models import AgentRole, Chapter, HumanFeedback

if TYPE_CHECKING:
    from bookflow.control import WorkflowControl

logger = logging.getLogger(__name__)

_CHAIN = [AgentRole.WRITER, AgentRole.REVIEWER, AgentRole.EDITOR]

# Por debajo de esta recompensa media el agente sube su temperatura
_TUNING_THRESHOLD = 50.0


class MultiAgentPipeline:
    """
    Cadena fija writer → reviewer → editor sobre un capítulo.

    La pasada es atómica: si cualquier agente falla no se toca el capítulo
    ni se alimenta el motor de recompensas. Solo al completar las tres
    llamadas se aplica contenido, historial y versión.
    """

    def __init__(self, agents: list[Agent], engine: Optional[RewardEngine] = None):
        roles = [a.role for a in agents]
        if roles != _CHAIN:
            raise ValueError(
                f"El pipeline necesita los agentes en orden "
                f"{[r.value for r in _CHAIN]}, recibió {[r.value for r in roles]}"
            )
        self._agents = agents
        self._engine = engine

    @property
    def agents(self) -> list[Agent]:
        return list(self._agents)

    async def process_chapter(
        self,
        chapter:  Chapter,
        feedback: Iterable[HumanFeedback] = (),
        control:  Optional["WorkflowControl"] = None,
        learning: bool = True,
    ) -> Chapter:
        feedback = list(feedback)
        content  = chapter.content
        outcomes: list[SpinOutcome] = []

        for agent in self._agents:
            if control is not None:
                await control.checkpoint()

            outcome = await agent.spin(content, feedback, control, subject_id=chapter.id)
            outcomes.append(outcome)

            # El reviewer solo deja constancia; writer y editor reescriben
            if agent.role is not AgentRole.REVIEWER:
                content = outcome.record.response

        # ── Commit ──────────────────────────────────────────────────────
        chapter.commit_pass(content, [o.record for o in outcomes])
        for agent, outcome in zip(self._agents, outcomes):
            agent.note_reward(outcome.record.reward)
            if learning and self._engine is not None:
                self._engine.record(outcome.observation)

        logger.info(
            "Capítulo '%s' → v%d (reward %.1f)",
            chapter.title, chapter.version, chapter.reward_score,
        )
        return chapter

    def tune_agents(self) -> list[str]:
        """
        Sube +0.1 la temperatura (tope 1.0) de los agentes cuya recompensa
        media está por debajo de 50. Devuelve los nombres ajustados.
        """
        tuned = []
        for agent in self._agents:
            average = agent.average_reward
            if average is not None and average < _TUNING_THRESHOLD:
                before = agent.config.temperature
                after  = agent.raise_temperature()
                if after != before:
                    tuned.append(agent.config.name)
                    logger.info(
                        "%s: temperatura %.2f → %.2f (reward medio %.1f)",
                        agent.config.name, before, after, average,
                    )
        return tuned
