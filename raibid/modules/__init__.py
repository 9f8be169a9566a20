"""
Infrastructure management modules.
"""
from .infra import Orchestrator, RaibidConfig, get_config

__all__ = [
    'Orchestrator',
    'RaibidConfig',
    'get_config',
]
