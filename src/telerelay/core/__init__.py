"""
telerelay Server - agent sessions, ingestion and sinks
"""

from .config import ServerConfig, load_config
from .ingestion import IngestionPipeline, LossEvent
from .registry import ConnectionRegistry

__all__ = ["ConnectionRegistry", "IngestionPipeline", "LossEvent", "ServerConfig", "load_config"]
