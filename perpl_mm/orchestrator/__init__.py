"""
Orchestrator package - the run loop.
"""

from perpl_mm.orchestrator.bot_orchestrator import (
    BotOrchestrator,
    OrchestratorConfig,
    RestartReason,
    Wake,
)

__all__ = [
    "BotOrchestrator",
    "OrchestratorConfig",
    "RestartReason",
    "Wake",
]
