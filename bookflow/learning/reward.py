# bookflow/learning/reward.py
from dataclasses import dataclass


@dataclass(frozen=True)
class RewardWeights:
    """Pesos de la recompensa combinada. Configurables desde YAML (sección reward)."""
    quality:    float = 0.4
    feedback:   float = 0.3
    timeliness: float = 0.2
    error:      float = 0.1


@dataclass(frozen=True)
class TuningThresholds:
    """Umbrales de rendimiento para el auto-ajuste de epsilon / learning rate."""
    low:  float = 0.3
    high: float = 0.8


def calculate_reward(
    quality:            float,
    feedback:           float,
    processing_time_ms: float,
    error_rate:         float = 0.0,
    weights:            RewardWeights = RewardWeights(),
) -> float:
    """
    Recompensa combinada de una llamada a un agente. Nunca negativa.

    quality:   0-100 (heurística de contenido)
    feedback:  0-10  (media de ratings humanos, 5 si no hay)
    processing_time_ms: cuanto más rápido, más bonus (tope en 100 ms)
    error_rate: 0-1
    """
    reward = (
        weights.quality    * quality
        + weights.feedback   * feedback * 10
        + weights.timeliness * max(0.0, 100 - processing_time_ms)
        - weights.error      * error_rate * 50
    )
    return max(0.0, reward)


def acquisition_reward(content: str, title: str | None) -> float:
    """Calidad de una extracción: longitud, título real y estructura en párrafos."""
    words      = len(content.split())
    paragraphs = len(content.split("\n\n"))

    reward = 10.0
    if words > 100:
        reward += 20
    if words > 500:
        reward += 30
    if words > 1000:
        reward += 40
    if title and title.strip():
        reward += 15
    if paragraphs > 3:
        reward += 10
    if words < 50:
        reward -= 30
    if words > 5000:
        reward -= 10
    return max(0.0, reward)
