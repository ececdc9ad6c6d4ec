"""Agent modules for journalq.

Includes:
- Query orchestrator (classifier, decomposer, planner, execution, consolidator)
- All individual agents
"""

# Query pipeline orchestrator
from .query_orchestrator import QueryOrchestrator, create_query_orchestrator

# Individual query agents
from .classifier_agent import ClassifierAgent
from .decomposer_agent import DecomposerAgent
from .planner_agent import PlannerAgent
from .execution_agent import ExecutionAgent, ExecutionContext
from .consolidator_agent import ConsolidatorAgent

# Output recovery
from .sanitizer import SanitizedOutput, sanitize

# Models
from .models import (
    AttemptOutcome,
    ClassificationResult,
    Complexity,
    ConsolidatedAnswer,
    ExecutionPlan,
    ExecutionResult,
    ExecutionStrategy,
    PerformanceBudget,
    PipelineTrace,
    PlanningResult,
    Question,
    RetrievalMethod,
    RetrievedRecord,
    Strategy,
    SubQuestion,
    SubQuestionType,
    TimeRange,
    TimeRangeType,
    Turn,
)

__all__ = [
    "QueryOrchestrator",
    "create_query_orchestrator",
    "ClassifierAgent",
    "DecomposerAgent",
    "PlannerAgent",
    "ExecutionAgent",
    "ExecutionContext",
    "ConsolidatorAgent",
    "SanitizedOutput",
    "sanitize",
    "AttemptOutcome",
    "ClassificationResult",
    "Complexity",
    "ConsolidatedAnswer",
    "ExecutionPlan",
    "ExecutionResult",
    "ExecutionStrategy",
    "PerformanceBudget",
    "PipelineTrace",
    "PlanningResult",
    "Question",
    "RetrievalMethod",
    "RetrievedRecord",
    "Strategy",
    "SubQuestion",
    "SubQuestionType",
    "TimeRange",
    "TimeRangeType",
    "Turn",
]
