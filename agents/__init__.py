from .micro_agent import MicroAgent, MicroAgentConfig
from .meso_agent import MesoAgent, MesoAgentConfig
from .meta_agent import MetaAgent, MetaAgentConfig
from .orchestrator import Orchestrator

__all__ = [
    "MicroAgent",
    "MicroAgentConfig",
    "MesoAgent",
    "MesoAgentConfig",
    "MetaAgent",
    "MetaAgentConfig",
    "Orchestrator",
]
