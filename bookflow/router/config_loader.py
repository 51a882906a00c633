# router/config_loader.py
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from bookflow.learning.reward import RewardWeights, TuningThresholds
from bookflow.models import AgentRole
from bookflow.router.models import AgentConfig, ProviderConfig

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = Path.home() / ".bookflow" / "config.yaml"

_DEFAULT_PROVIDERS = [
    {"name": "claude", "api_key": "${ANTHROPIC_API_KEY}"},
    {"name": "gemini", "api_key": "${GEMINI_API_KEY}"},
]

_DEFAULT_AGENTS = [
    {"role": "writer",   "name": "Escritor creativo",   "provider": "gemini",
     "model": "gemini-2.0-flash",          "temperature": 0.8, "max_output_tokens": 2000},
    {"role": "reviewer", "name": "Revisor de contenido", "provider": "claude",
     "model": "claude-haiku-4-5-20251001", "temperature": 0.3, "max_output_tokens": 1500},
    {"role": "editor",   "name": "Editor profesional",  "provider": "claude",
     "model": "claude-haiku-4-5-20251001", "temperature": 0.2, "max_output_tokens": 2000},
]


@dataclass
class LearningConfig:
    learning_rate:   float            = 0.1
    discount_factor: float            = 0.95
    epsilon:         float            = 0.1
    thresholds:      TuningThresholds = TuningThresholds()


@dataclass
class BookflowConfig:
    providers:        list[ProviderConfig]
    agents:           list[AgentConfig]
    reward_weights:   RewardWeights  = RewardWeights()
    learning:         LearningConfig = field(default_factory=LearningConfig)
    feedback_timeout: float          = 30.0


def load_config(config_path: Optional[str] = None) -> BookflowConfig:
    """
    Carga la configuración desde YAML.
    Sin archivo se usan los valores por defecto (claves API desde el entorno).
    Resuelve variables de entorno en los api_key (${VAR}).
    """
    path = Path(config_path or os.environ.get("BOOKFLOW_CONFIG_PATH") or _DEFAULT_CONFIG_PATH)

    if path.exists():
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    elif config_path:
        # Ruta explícita que no existe: error del usuario, no default silencioso
        raise FileNotFoundError(f"Config no encontrada en {path}.")
    else:
        logger.info("Sin config en %s, usando valores por defecto", path)
        raw = {}

    reward   = raw.get("reward") or {}
    learning = raw.get("learning") or {}
    workflow = raw.get("workflow") or {}

    return BookflowConfig(
        providers        = [_parse_provider(p) for p in raw.get("providers") or _DEFAULT_PROVIDERS],
        agents           = _parse_agents(raw.get("agents") or _DEFAULT_AGENTS),
        reward_weights   = RewardWeights(
            quality    = float(reward.get("quality", 0.4)),
            feedback   = float(reward.get("feedback", 0.3)),
            timeliness = float(reward.get("timeliness", 0.2)),
            error      = float(reward.get("error", 0.1)),
        ),
        learning         = LearningConfig(
            learning_rate   = float(learning.get("learning_rate", 0.1)),
            discount_factor = float(learning.get("discount_factor", 0.95)),
            epsilon         = float(learning.get("epsilon", 0.1)),
            thresholds      = TuningThresholds(
                low  = float(learning.get("low_threshold", 0.3)),
                high = float(learning.get("high_threshold", 0.8)),
            ),
        ),
        feedback_timeout = float(workflow.get("feedback_timeout", 30)),
    )


def _parse_provider(entry: dict) -> ProviderConfig:
    return ProviderConfig(
        name             = entry["name"],
        api_key          = _resolve_env(entry.get("api_key")),
        timeout_seconds  = entry.get("timeout_seconds", 60),
        cooldown_seconds = entry.get("cooldown_seconds", 300),
    )


def _parse_agents(entries: list[dict]) -> list[AgentConfig]:
    """Devuelve los agentes en el orden fijo writer → reviewer → editor."""
    by_role: dict[AgentRole, AgentConfig] = {}
    for entry in entries:
        try:
            role = AgentRole(entry["role"])
        except ValueError:
            raise ValueError(
                f"Rol de agente desconocido: {entry['role']!r}. "
                f"Válidos: {', '.join(r.value for r in AgentRole)}"
            )
        by_role[role] = AgentConfig(
            name              = entry.get("name", role.value),
            role              = role,
            provider          = entry["provider"],
            model             = entry["model"],
            temperature       = float(entry.get("temperature", 0.5)),
            max_output_tokens = int(entry.get("max_output_tokens", 2000)),
            instruction       = entry.get("instruction", ""),
        )

    missing = [r.value for r in AgentRole if r not in by_role]
    if missing:
        raise ValueError(f"Faltan agentes en la config: {', '.join(missing)}")

    return [by_role[r] for r in AgentRole]


def _resolve_env(value: Optional[str]) -> Optional[str]:
    """Expande ${VAR_NAME} desde el entorno."""
    if not value or not value.startswith("${"):
        return value
    var_name = value.strip("${}").strip()
    return os.environ.get(var_name)
