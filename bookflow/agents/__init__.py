from bookflow.agents.agent import Agent, SpinOutcome
from bookflow.agents.pipeline import MultiAgentPipeline
from bookflow.agents.quality import assess_content_quality, feedback_score

__all__ = [
    "Agent",
    "SpinOutcome",
    "MultiAgentPipeline",
    "assess_content_quality",
    "feedback_score",
]
