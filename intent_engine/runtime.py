"""Wiring of repository, transport, audit and services from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .approvals import HumanApprovalProcessor
from .audit import AuditEmitter, get_audit_sink
from .automation import AutomationGraph
from .completion import StepCompletion
from .config import IntentEngineConfig, load_config
from .engine import TransitionEngine
from .persistence import WorkflowRepository, get_repository
from .runner import StepRunner
from .transports import BaseTransport, get_transport


@dataclass
class Runtime:
    config: IntentEngineConfig
    repository: WorkflowRepository
    transport: BaseTransport
    audit: AuditEmitter
    engine: TransitionEngine
    completion: StepCompletion
    approvals: HumanApprovalProcessor
    runner: StepRunner


def build_runtime(
    config: Optional[IntentEngineConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    transport: Optional[BaseTransport] = None,
    graph: Optional[AutomationGraph] = None,
) -> Runtime:
    """Assemble the engine and its collaborators."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    transport = transport or get_transport(config=config)
    emitter = AuditEmitter(get_audit_sink(config), timeout=config.audit.timeout_seconds)
    engine = TransitionEngine(repository, transport, graph=graph, audit_emitter=emitter)
    completion = StepCompletion(repository, engine)
    return Runtime(
        config=config,
        repository=repository,
        transport=transport,
        audit=emitter,
        engine=engine,
        completion=completion,
        approvals=HumanApprovalProcessor(repository, engine),
        runner=StepRunner(repository, engine, completion),
    )
