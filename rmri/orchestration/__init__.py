"""
Run orchestration: the iteration loop, the run registry and pipeline wiring.
"""

from rmri.orchestration.orchestrator import RMRIOrchestrator, build_final_report
from rmri.orchestration.pipeline import build_pipeline
from rmri.orchestration.registry import InMemoryRunRegistry, RunHandle, RunRegistry

__all__ = [
    "RMRIOrchestrator",
    "build_final_report",
    "build_pipeline",
    "InMemoryRunRegistry",
    "RunHandle",
    "RunRegistry",
]
