"""
telerelay Agent - host-side collection and delivery
"""

from .agent import Agent
from .config import AgentConfig, load_config

__all__ = ["Agent", "AgentConfig", "load_config"]
