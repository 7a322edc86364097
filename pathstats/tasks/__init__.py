"""
Tasks Module
"""
from .orchestrator import (
    ClientRunResult,
    OrchestratorState,
    RunReport,
    RunStatus,
    TaskOrchestrator,
)

__all__ = [
    "ClientRunResult",
    "OrchestratorState",
    "RunReport",
    "RunStatus",
    "TaskOrchestrator",
]
