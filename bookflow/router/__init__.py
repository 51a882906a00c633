from bookflow.router.router import Router
from bookflow.router.base import BaseProvider
from bookflow.router.models import AgentConfig, ProviderConfig, ProviderResponse
from bookflow.router.config_loader import BookflowConfig, LearningConfig, load_config

__all__ = [
    "Router",
    "BaseProvider",
    "AgentConfig",
    "ProviderConfig",
    "ProviderResponse",
    "BookflowConfig",
    "LearningConfig",
    "load_config",
]
