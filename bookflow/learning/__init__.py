from bookflow.learning.reward import (
    RewardWeights,
    TuningThresholds,
    acquisition_reward,
    calculate_reward,
)
from bookflow.learning.reward_engine import (
    ActionPrediction,
    LearningParameters,
    RewardEngine,
    state_key,
)

__all__ = [
    "RewardWeights",
    "TuningThresholds",
    "acquisition_reward",
    "calculate_reward",
    "ActionPrediction",
    "LearningParameters",
    "RewardEngine",
    "state_key",
]
