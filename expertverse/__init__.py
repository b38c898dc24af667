"""
Expertverse - a fleet of versioned expert agents.

Experts answer questions, learn from observations, ingest training data and
consult each other. Work is routed through a single-flight priority
scheduler; every knowledge change is kept in an append-only, revertible
history.
"""

__version__ = "0.1.0"

# Facade
from .system import ExpertSystem, SELF_IMPROVE_TOPICS

# Core components
from .knowledge import KnowledgeStore, DiffLine, compute_diff, format_diff
from .registry import AgentRegistry
from .collaboration import CollaborationCoordinator, Handoff, resolve_peer
from .scheduler import TaskScheduler, TaskEvent
from .activity import ActivityLog, ActivityStats
from .persistence import PersistenceStrategy, InMemoryPersistence, JsonPersistence
from .roster import RosterLoader, RosterEntry, default_roster, load_roster

# Task handlers
from .handlers import (
    TaskContext,
    TaskHandler,
    RuleBasedHandler,
    EchoChatHandler,
    AppendNoteHandler,
    CallableHandler,
    build_llm_handlers,
    build_rule_based_handlers,
)

# Core schemas
from .schemas import (
    Expert,
    ExpertType,
    ExpertStatus,
    KnowledgeArtifact,
    HistoryEntry,
    AgentTask,
    TaskKind,
    TaskPriority,
    TaskStatus,
    ChatMessage,
    ChatResult,
    KnowledgeResult,
    PeerKnowledge,
    LogEntry,
    SystemState,
    WarRoomMessage,
    WarRoomSession,
)

# Errors
from .errors import (
    ExpertverseError,
    InvalidTarget,
    DuplicateAgent,
    VersionNotFound,
    TaskExecutionFailed,
    HandoffTargetNotFound,
    UnknownTaskKind,
)

__all__ = [
    # Facade
    "ExpertSystem",
    "SELF_IMPROVE_TOPICS",
    # Core components
    "KnowledgeStore",
    "DiffLine",
    "compute_diff",
    "format_diff",
    "AgentRegistry",
    "CollaborationCoordinator",
    "Handoff",
    "resolve_peer",
    "TaskScheduler",
    "TaskEvent",
    "ActivityLog",
    "ActivityStats",
    "PersistenceStrategy",
    "InMemoryPersistence",
    "JsonPersistence",
    "RosterLoader",
    "RosterEntry",
    "default_roster",
    "load_roster",
    # Task handlers
    "TaskContext",
    "TaskHandler",
    "RuleBasedHandler",
    "EchoChatHandler",
    "AppendNoteHandler",
    "CallableHandler",
    "build_llm_handlers",
    "build_rule_based_handlers",
    # Schemas
    "Expert",
    "ExpertType",
    "ExpertStatus",
    "KnowledgeArtifact",
    "HistoryEntry",
    "AgentTask",
    "TaskKind",
    "TaskPriority",
    "TaskStatus",
    "ChatMessage",
    "ChatResult",
    "KnowledgeResult",
    "PeerKnowledge",
    "LogEntry",
    "SystemState",
    "WarRoomMessage",
    "WarRoomSession",
    # Errors
    "ExpertverseError",
    "InvalidTarget",
    "DuplicateAgent",
    "VersionNotFound",
    "TaskExecutionFailed",
    "HandoffTargetNotFound",
    "UnknownTaskKind",
]
