"""
loopctl - Loop execution orchestrator

Drives multi-phase loop executions (phases of skills separated by approval
gates), ticks them autonomously, and coordinates reservations and merges
between concurrently running agent sets.
"""

__version__ = "0.1.0"
__author__ = "Loop Orchestration Team"


__all__ = ["LoopctlConfig", "load_config", "get_loopctl_home"]

from .config import LoopctlConfig, load_config, get_loopctl_home
