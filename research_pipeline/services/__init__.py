"""
Pipeline services: completion gateway, phase components, research
providers, budget gate, progress broadcaster and the orchestrator.
"""

from research_pipeline.services.budget_gate import BudgetGate, InMemoryCreditLedger
from research_pipeline.services.completion_gateway import CompletionGateway
from research_pipeline.services.pipeline_orchestrator import PipelineOrchestrator
from research_pipeline.services.progress import CancellationToken, ProgressBroadcaster

__all__ = [
    "BudgetGate",
    "CancellationToken",
    "CompletionGateway",
    "InMemoryCreditLedger",
    "PipelineOrchestrator",
    "ProgressBroadcaster",
]
