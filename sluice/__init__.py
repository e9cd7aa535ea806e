"""
Sluice - Admission Workflow Engine

A graph-based state machine that moves admission applications through
institution-defined stages: automatic transitions are evaluated against live
application data on a schedule, manual transitions are gated by permissions,
and stage entry fires deduplicated notifications.
"""

__version__ = "0.1.0"

# Data model and result types
from sluice.model import (
    AUTOMATIC,
    STAGE_ENTRY,
    AlreadyExists,
    ApplicationWorkflowState,
    Busy,
    Combinator,
    ConditionGroup,
    ConditionLeaf,
    ConditionNotMet,
    HistoryEntry,
    HistoryInvariantError,
    Lease,
    LeaseHeld,
    LeaseNotHeld,
    NoActiveTemplate,
    NoSuchTransition,
    NotificationTrigger,
    Operator,
    PermissionDenied,
    Rejection,
    RetryPolicy,
    Stage,
    StaleTransition,
    Transition,
    TransitionApplied,
    WorkflowNotInitialized,
    WorkflowTemplate,
)

# Conditions, graphs and templates
from sluice.conditions import evaluate, is_eligible
from sluice.graph import GraphRegistry, MalformedTemplate, TransitionGraph
from sluice.loader import load_template, load_template_file
from sluice.defaults import default_templates, permissions_for_roles
from sluice.requirements import RequirementsReport, evaluate_stage_requirements

# Collaborator contracts
from sluice.collaborators import (
    CandidateSource,
    ContextProvider,
    NotificationSender,
    StaticContextProvider,
    StoreCandidateSource,
)

# State and notifications
from sluice.store import (
    InMemoryStateStore,
    SqlStateStore,
    SqlTemplateStore,
    WorkflowNotFound,
    WorkflowStateStore,
)
from sluice.notifications import (
    DedupeKey,
    DeliveryStatus,
    InMemoryDedupeStore,
    NotificationDispatcher,
    SqlDedupeStore,
)

# Engine services
from sluice.executor import TransitionExecutor
from sluice.scheduler import AutomaticEvaluationScheduler, TickReport
from sluice.gateway import ManualTransitionGateway

# Configuration and observability
from sluice.config import EngineConfig, load_engine_config, load_sluice_toml
from sluice.metrics import SluiceMetrics
from sluice.tracing import SluiceTracer

__all__ = [
    "__version__",
    "AUTOMATIC",
    "STAGE_ENTRY",
    "AlreadyExists",
    "ApplicationWorkflowState",
    "Busy",
    "Combinator",
    "ConditionGroup",
    "ConditionLeaf",
    "ConditionNotMet",
    "HistoryEntry",
    "HistoryInvariantError",
    "Lease",
    "LeaseHeld",
    "LeaseNotHeld",
    "NoActiveTemplate",
    "NoSuchTransition",
    "NotificationTrigger",
    "Operator",
    "PermissionDenied",
    "Rejection",
    "RetryPolicy",
    "Stage",
    "StaleTransition",
    "Transition",
    "TransitionApplied",
    "WorkflowNotInitialized",
    "WorkflowTemplate",
    "evaluate",
    "is_eligible",
    "GraphRegistry",
    "MalformedTemplate",
    "TransitionGraph",
    "load_template",
    "load_template_file",
    "default_templates",
    "permissions_for_roles",
    "RequirementsReport",
    "evaluate_stage_requirements",
    "CandidateSource",
    "ContextProvider",
    "NotificationSender",
    "StaticContextProvider",
    "StoreCandidateSource",
    "InMemoryStateStore",
    "SqlStateStore",
    "SqlTemplateStore",
    "WorkflowNotFound",
    "WorkflowStateStore",
    "DedupeKey",
    "DeliveryStatus",
    "InMemoryDedupeStore",
    "NotificationDispatcher",
    "SqlDedupeStore",
    "TransitionExecutor",
    "AutomaticEvaluationScheduler",
    "TickReport",
    "ManualTransitionGateway",
    "EngineConfig",
    "load_engine_config",
    "load_sluice_toml",
    "SluiceMetrics",
    "SluiceTracer",
]
