"""Intent Engine: state machine orchestration for the content pipeline."""

from .approvals import HumanApprovalProcessor
from .automation import AutomationGraph, default_automation_graph
from .completion import CompletionResult, StepCompletion
from .contracts import JobEvent, StepContext, StepOutput
from .engine import TransitionEngine, TransitionOutcome, TransitionResult
from .gates import GateResolver
from .persistence import get_repository
from .runner import StepRunner
from .runtime import Runtime, build_runtime
from .states import Step, WorkflowEvent, WorkflowState
from .transports import get_transport
from .worker import StepWorker

__version__ = "0.1.0"
__all__ = [
    "AutomationGraph",
    "CompletionResult",
    "GateResolver",
    "HumanApprovalProcessor",
    "JobEvent",
    "Runtime",
    "Step",
    "StepCompletion",
    "StepContext",
    "StepOutput",
    "StepRunner",
    "StepWorker",
    "TransitionEngine",
    "TransitionOutcome",
    "TransitionResult",
    "WorkflowEvent",
    "WorkflowState",
    "build_runtime",
    "default_automation_graph",
    "get_repository",
    "get_transport",
]
