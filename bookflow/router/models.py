# router/models.py
from dataclasses import dataclass, field
from typing import Optional

from bookflow.models import AgentRole


@dataclass
class ProviderResponse:
    """Lo que devuelve cualquier proveedor tras una generación."""
    text:          str
    provider:      str
    model:         str
    tokens_input:  int = 0
    tokens_output: int = 0


@dataclass
class ProviderConfig:
    name:             str            # "claude" | "gemini"
    api_key:          Optional[str]
    timeout_seconds:  int   = 60
    cooldown_seconds: int   = 300
    _unavailable_until: Optional[float] = field(default=None, repr=False)


@dataclass
class AgentConfig:
    """
    Configuración de un agente del pipeline.
    `temperature` es mutable: el pipeline la sube si el agente rinde poco.
    `instruction` vacío → plantilla por defecto del rol.
    """
    name:              str
    role:              AgentRole
    provider:          str
    model:             str
    temperature:       float = 0.5
    max_output_tokens: int   = 2000
    instruction:       str   = ""
