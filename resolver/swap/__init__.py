"""
Order lifecycle across two chains.
"""

from .orchestrator import Orchestrator, OrchestratorConfig, TransitionResult, KeyedLock

__all__ = ["Orchestrator", "OrchestratorConfig", "TransitionResult", "KeyedLock"]
