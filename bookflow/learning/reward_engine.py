# bookflow/learning/reward_engine.py
import json
import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from bookflow.learning.reward import TuningThresholds
from bookflow.models import RewardObservation, ValueTableEntry

logger = logging.getLogger(__name__)

# Límites del auto-ajuste
_EPSILON_MAX, _EPSILON_MIN = 0.5, 0.01
_ALPHA_MAX,   _ALPHA_MIN   = 0.3, 0.05


@dataclass(frozen=True)
class LearningParameters:
    learning_rate:   float
    discount_factor: float
    epsilon:         float


@dataclass(frozen=True)
class ActionPrediction:
    action:          Optional[str]
    confidence:      float
    expected_reward: float


def state_key(state: dict[str, Any]) -> str:
    """Serialización canónica: dos estados con los mismos pares dan la misma clave."""
    return json.dumps(state, sort_keys=True, separators=(",", ":"), default=str)


class RewardEngine:
    """
    Q-learning tabular sobre observaciones (estado, acción, recompensa, estado').

    Las actualizaciones se serializan con un lock: el workflow y los
    callers externos (métricas, export) pueden tocarlo a la vez.
    `rng` es inyectable para que la selección ε-greedy sea determinista en tests.
    """

    def __init__(
        self,
        learning_rate:   float = 0.1,
        discount_factor: float = 0.95,
        epsilon:         float = 0.1,
        thresholds:      TuningThresholds = TuningThresholds(),
        rng:             Optional[random.Random] = None,
    ):
        self._alpha      = learning_rate
        self._gamma      = discount_factor
        self._epsilon    = epsilon
        self._thresholds = thresholds
        self._rng        = rng or random.Random()
        self._lock       = threading.Lock()

        self._table:   dict[tuple[str, str], ValueTableEntry] = {}
        self._history: list[RewardObservation] = []

    # ------------------------------------------------------------------
    # Aprendizaje
    # ------------------------------------------------------------------

    def record(self, observation: RewardObservation) -> float:
        """
        Registra la observación y aplica la regla de actualización:
            Q(s,a) ← Q(s,a) + α [r + γ·max_a' Q(s',a') − Q(s,a)]
        Devuelve el nuevo valor de Q(s,a).
        """
        key      = state_key(observation.state)
        next_key = state_key(observation.next_state)

        with self._lock:
            self._history.append(observation)
            entry = self._table.get((key, observation.action))
            if entry is None:
                entry = ValueTableEntry(state=key, action=observation.action)
                self._table[(key, observation.action)] = entry

            target = observation.reward + self._gamma * self._max_value(next_key)
            entry.value  += self._alpha * (target - entry.value)
            entry.visits += 1
            new_value = entry.value

        logger.debug(
            "Q[%s, %s] = %.3f (reward=%.2f)",
            key, observation.action, new_value, observation.reward,
        )
        return new_value

    def select_action(self, state: dict[str, Any], candidates: list[str]) -> str:
        """
        ε-greedy: con probabilidad ε una acción aleatoria, si no la de mayor Q.
        Pares no vistos valen 0. En empate gana el primer candidato.
        """
        if not candidates:
            raise ValueError("select_action necesita al menos una acción candidata")

        with self._lock:
            if self._rng.random() < self._epsilon:
                return self._rng.choice(candidates)

            key = state_key(state)
            best_action, best_value = candidates[0], float("-inf")
            for action in candidates:
                entry = self._table.get((key, action))
                value = entry.value if entry else 0.0
                if value > best_value:
                    best_action, best_value = action, value
            return best_action

    def optimize_parameters(self, performance: float) -> LearningParameters:
        """
        Auto-ajuste según el rendimiento normalizado (0-1):
          - bajo  → más exploración y aprendizaje más rápido
          - alto  → menos exploración, aprendizaje más estable
          - medio → sin cambios
        """
        with self._lock:
            if performance < self._thresholds.low:
                self._epsilon = min(_EPSILON_MAX, self._epsilon + 0.05)
                self._alpha   = min(_ALPHA_MAX, self._alpha + 0.01)
            elif performance > self._thresholds.high:
                self._epsilon = max(_EPSILON_MIN, self._epsilon - 0.02)
                self._alpha   = max(_ALPHA_MIN, self._alpha - 0.005)
            params = self._parameters()

        logger.debug(
            "Parámetros ajustados (performance=%.2f): ε=%.3f α=%.3f",
            performance, params.epsilon, params.learning_rate,
        )
        return params

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------

    @property
    def parameters(self) -> LearningParameters:
        with self._lock:
            return self._parameters()

    def value_of(self, state: dict[str, Any], action: str) -> float:
        with self._lock:
            entry = self._table.get((state_key(state), action))
            return entry.value if entry else 0.0

    def get_reward_stats(self) -> dict[str, float]:
        with self._lock:
            rewards = [o.reward for o in self._history]

        if not rewards:
            return {
                "total_observations": 0,
                "mean_reward":        0.0,
                "max_reward":         0.0,
                "min_reward":         0.0,
                "recent_trend":       0.0,
            }

        return {
            "total_observations": len(rewards),
            "mean_reward":        sum(rewards) / len(rewards),
            "max_reward":         max(rewards),
            "min_reward":         min(rewards),
            "recent_trend":       _recent_trend(rewards),
        }

    def rolling_performance(self, window: int = 10) -> float:
        """Media de las últimas `window` recompensas normalizada a 0-1."""
        with self._lock:
            recent = [o.reward for o in self._history[-window:]]
        if not recent:
            return 0.0
        return (sum(recent) / len(recent)) / 100

    def predict_optimal_action(self, state: dict[str, Any]) -> ActionPrediction:
        key = state_key(state)
        with self._lock:
            entries = [e for (s, _), e in self._table.items() if s == key]

        if not entries:
            return ActionPrediction(action=None, confidence=0.0, expected_reward=0.0)

        total_visits = sum(e.visits for e in entries)
        best = max(entries, key=lambda e: e.value)
        return ActionPrediction(
            action          = best.action,
            confidence      = best.visits / max(1, total_visits),
            expected_reward = best.value,
        )

    # ------------------------------------------------------------------
    # Persistencia de la tabla
    # ------------------------------------------------------------------

    def export_table(self) -> list[ValueTableEntry]:
        with self._lock:
            return [
                ValueTableEntry(e.state, e.action, e.value, e.visits)
                for e in self._table.values()
            ]

    def import_table(self, entries: Iterable[ValueTableEntry]) -> None:
        """Reemplaza la tabla completa. El historial de recompensas no se toca."""
        with self._lock:
            self._table = {
                (e.state, e.action): ValueTableEntry(e.state, e.action, e.value, e.visits)
                for e in entries
            }

    # ------------------------------------------------------------------
    # Helpers privados, llamar con el lock tomado
    # ------------------------------------------------------------------

    def _max_value(self, key: str) -> float:
        values = [e.value for (s, _), e in self._table.items() if s == key]
        return max(values, default=0.0)

    def _parameters(self) -> LearningParameters:
        return LearningParameters(
            learning_rate   = self._alpha,
            discount_factor = self._gamma,
            epsilon         = self._epsilon,
        )


def _recent_trend(rewards: list[float]) -> float:
    """% de cambio de las últimas 10 recompensas frente a las 10 anteriores."""
    if len(rewards) < 20:
        return 0.0
    recent   = sum(rewards[-10:]) / 10
    previous = sum(rewards[-20:-10]) / 10
    if previous == 0:
        return 0.0
    return (recent - previous) / previous * 100
