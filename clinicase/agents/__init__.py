"""Interactive case orchestration package.

Provides the turn orchestrator, its collaborator interfaces and the evidence
collector used for feedback grounding and correct-index recovery.
"""

from clinicase.agents.types import (
    AnswerRequest,
    DocumentHit,
    EvidenceService,
    GeneratorService,
    StartRequest,
    StartResult,
    TurnResult,
)
from clinicase.agents.policies import TurnBudgetPolicy
from clinicase.agents.evidence import CompositeEvidenceService, EvidenceCollector
from clinicase.agents.orchestrator import TurnOrchestrator

__all__ = [
    "AnswerRequest",
    "CompositeEvidenceService",
    "DocumentHit",
    "EvidenceCollector",
    "EvidenceService",
    "GeneratorService",
    "StartRequest",
    "StartResult",
    "TurnBudgetPolicy",
    "TurnOrchestrator",
    "TurnResult",
]
