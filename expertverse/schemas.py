"""
Pydantic schemas for the Expertverse scheduler and knowledge store.

All data structures shared between the registry, scheduler, coordinator,
handlers and persistence layers are defined here.

Design Philosophy:
- Knowledge content is an opaque string; the core never parses it
- Collaboration details exist only while an expert is collaborating
  (invalid status/peer combinations fail validation)
- Task payloads and results are typed per task kind
- Pydantic validation keeps persisted state honest across load/save
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Expert Schemas
# ============================================================================


class ExpertType(str, Enum):
    """Domain specialisation of an expert."""

    DATABASE = "Database"
    API = "API"
    WEBSOCKET = "WebSocket"
    FRONTEND = "Frontend"
    BACKEND = "Backend"
    DEVOPS = "DevOps"
    SECURITY = "Security"
    MOBILE = "Mobile"
    QA = "QA"
    UX = "UX"
    DATA = "Data"
    META = "Meta"
    PRODUCT = "Product"
    AI_RESEARCH = "AI Research"
    DOCS = "Docs"


class ExpertStatus(str, Enum):
    """Visible status of an expert.

    idle -> queued -> thinking -> active/idle, with ``collaborating`` as a
    sub-state of ``thinking`` entered on two experts at once during a
    handoff. ``learning`` is kept for callers that flag manual edits.
    """

    IDLE = "idle"
    ACTIVE = "active"
    LEARNING = "learning"
    THINKING = "thinking"
    QUEUED = "queued"
    COLLABORATING = "collaborating"


STEADY_STATUSES = frozenset({ExpertStatus.IDLE, ExpertStatus.ACTIVE})
BUSY_STATUSES = frozenset({ExpertStatus.THINKING, ExpertStatus.COLLABORATING})


class Collaboration(BaseModel):
    """Who an expert is collaborating with, and about what."""

    peer_id: str = Field(..., description="Id of the other expert in the handoff")
    peer_name: str = Field(..., description="Display name of the other expert")
    topic: str = Field("", description="Reason given for the consultation")


class Expert(BaseModel):
    """Identity and visible state of an expert.

    The knowledge artifact itself lives in the KnowledgeStore; ``version``
    mirrors the current artifact version so snapshots can be rendered without
    touching the store.
    """

    id: str = Field(..., description="Stable expert identifier")
    name: str = Field(..., description="Display name (used for fuzzy peer lookup)")
    type: ExpertType = Field(..., description="Domain specialisation")
    description: str = Field("", description="What the expert knows about")
    status: ExpertStatus = Field(ExpertStatus.IDLE, description="Current visible status")
    learnings: int = Field(0, ge=0, description="Number of applied knowledge updates")
    last_updated: datetime = Field(default_factory=utcnow)
    version: int = Field(1, ge=1, description="Current knowledge version")
    # Only populated while status == collaborating. Enforced below so that a
    # "collaborating with nobody" expert cannot be constructed.
    collaboration: Optional[Collaboration] = None

    @model_validator(mode="after")
    def _collaboration_matches_status(self) -> "Expert":
        if self.status == ExpertStatus.COLLABORATING and self.collaboration is None:
            raise ValueError(f"Expert {self.id} is collaborating without a peer")
        if self.status != ExpertStatus.COLLABORATING and self.collaboration is not None:
            raise ValueError(
                f"Expert {self.id} carries collaboration details while {self.status.value}"
            )
        return self

    @property
    def collaborating_with(self) -> Optional[str]:
        return self.collaboration.peer_name if self.collaboration else None

    @property
    def collaboration_topic(self) -> Optional[str]:
        return self.collaboration.topic if self.collaboration else None

    def with_changes(self, **changes: Any) -> "Expert":
        """Return a validated copy with ``changes`` applied.

        ``model_copy(update=...)`` skips validation, which would let a status
        change leave stale collaboration fields behind.
        """

        data = self.model_dump()
        data.update(changes)
        return Expert.model_validate(data)


# ============================================================================
# Knowledge Schemas
# ============================================================================


class KnowledgeArtifact(BaseModel):
    """A versioned snapshot of an expert's mental model."""

    version: int = Field(..., ge=1, description="Monotonic version, starting at 1")
    content: str = Field(..., description="Opaque knowledge blob (YAML by convention)")
    timestamp: datetime = Field(default_factory=utcnow)
    reason: str = Field("Initial knowledge", description="Why this version exists")


class HistoryEntry(KnowledgeArtifact):
    """A superseded artifact, tagged with the reason it was superseded.

    Examples: "Pre-improvement backup", "Pre-training backup", "Reverted to v2".
    """


class KnowledgeRecord(BaseModel):
    """Current artifact plus the append-only list of older versions."""

    current: KnowledgeArtifact
    history: List[HistoryEntry] = Field(default_factory=list)


class PeerKnowledge(BaseModel):
    """What a handler receives when a consultation finds a peer."""

    expert: Expert
    knowledge: KnowledgeArtifact


# ============================================================================
# Task Schemas
# ============================================================================


class TaskKind(str, Enum):
    CHAT = "CHAT"
    IMPROVE = "IMPROVE"
    TRAIN = "TRAIN"
    COLLABORATION = "COLLABORATION"
    RESEARCH = "RESEARCH"


class TaskPriority(IntEnum):
    """Dispatch bands. Higher value dispatches first.

    CRITICAL is user-facing chat, HIGH explicit training/research, MEDIUM
    standard analysis, LOW background self-improvement.
    """

    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SearchSource(BaseModel):
    title: str
    uri: str


class ChatMessage(BaseModel):
    """A single turn in an expert chat transcript."""

    role: Literal["user", "model", "system"]
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    sources: List[SearchSource] = Field(default_factory=list)


class ChatPayload(BaseModel):
    message: str = Field(..., description="The user's question")
    history: List[ChatMessage] = Field(default_factory=list, description="Prior turns")


class ImprovePayload(BaseModel):
    context: str = Field(..., description="Observation that should refine the model")


class TrainPayload(BaseModel):
    data: str = Field(..., description="Raw training material (code, SQL, JSON, text)")


class ResearchPayload(BaseModel):
    topic: str = Field(..., description="Topic to research and fold into the model")


class CollaborationPayload(BaseModel):
    problem: str = Field(..., description="Problem the expert should solve with a peer")
    peer_hint: Optional[str] = Field(None, description="Preferred peer name, if any")


TaskPayload = Union[ChatPayload, ImprovePayload, TrainPayload, ResearchPayload, CollaborationPayload]

PAYLOAD_TYPES: Dict[TaskKind, type[BaseModel]] = {
    TaskKind.CHAT: ChatPayload,
    TaskKind.IMPROVE: ImprovePayload,
    TaskKind.TRAIN: TrainPayload,
    TaskKind.RESEARCH: ResearchPayload,
    TaskKind.COLLABORATION: CollaborationPayload,
}


class AgentTask(BaseModel):
    """A unit of work targeting one expert."""

    id: str
    target_agent_id: str
    kind: TaskKind
    priority: TaskPriority
    status: TaskStatus = TaskStatus.PENDING
    payload: TaskPayload
    enqueued_at: datetime = Field(default_factory=utcnow)
    # Monotonic submission counter. Breaks ties when two tasks share a
    # timestamp so selection stays FIFO within a band.
    sequence: int = Field(0, ge=0)
    description: str = ""
    error: Optional[str] = Field(None, description="Failure reason for FAILED tasks")

    @model_validator(mode="before")
    @classmethod
    def _coerce_payload(cls, data: Any) -> Any:
        # Plain dict payloads are parsed with the model matching ``kind`` rather
        # than left to union guessing.
        if isinstance(data, dict) and isinstance(data.get("payload"), dict):
            kind = TaskKind(data.get("kind"))
            data = dict(data)
            data["payload"] = PAYLOAD_TYPES[kind].model_validate(data["payload"])
        return data

    @model_validator(mode="after")
    def _payload_matches_kind(self) -> "AgentTask":
        expected = PAYLOAD_TYPES[self.kind]
        if not isinstance(self.payload, expected):
            raise ValueError(
                f"{self.kind.value} task requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )
        return self


# ============================================================================
# Handler Result Schemas
# ============================================================================


class CollaborationRecord(BaseModel):
    """Summary of a consultation that happened during a task."""

    with_expert_id: str
    with_expert_name: str
    reason: str


class ChatResult(BaseModel):
    text: str
    collaboration: Optional[CollaborationRecord] = None
    sources: List[SearchSource] = Field(default_factory=list)


class KnowledgeResult(BaseModel):
    """Outcome of IMPROVE, TRAIN and RESEARCH work."""

    new_expertise: str = Field(..., description="The full updated knowledge blob")
    summary: str = Field(..., description="One sentence on what was learned")
    sources: List[SearchSource] = Field(default_factory=list)


# ============================================================================
# War Room Schemas
# ============================================================================

MODERATOR_ID = "moderator"


class WarRoomMessage(BaseModel):
    """One turn of a moderated multi-expert debate."""

    id: str
    speaker_id: str = Field(..., description=f"Expert id, or '{MODERATOR_ID}'")
    speaker_name: str
    role: Literal["expert", "moderator"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    is_consensus: bool = False
    sources: List[SearchSource] = Field(default_factory=list)


class WarRoomSession(BaseModel):
    """Transcript and outcome of a War Room debate.

    ``outcome`` is ``consensus`` when the moderator summarised a solution,
    ``turn_limit`` when the debate hit ``max_turns`` first, and ``error``
    when a turn could not be generated (``error`` then holds the cause).
    """

    topic: str
    participant_ids: List[str]
    messages: List[WarRoomMessage] = Field(default_factory=list)
    outcome: Literal["consensus", "turn_limit", "error"] = "turn_limit"
    error: Optional[str] = None

    @property
    def turns(self) -> int:
        return len(self.messages)

    @property
    def consensus(self) -> Optional[WarRoomMessage]:
        for message in reversed(self.messages):
            if message.is_consensus:
                return message
        return None


# ============================================================================
# Activity Log & Persistence Schemas
# ============================================================================

LogAction = Literal[
    "Created",
    "Self-Improved",
    "Trained",
    "Researched",
    "Queried",
    "Error",
    "Collaboration",
    "Reverted",
    "Task Queued",
    "Task Complete",
]


class LogEntry(BaseModel):
    id: str
    expert_id: str
    expert_name: str
    action: LogAction
    details: str
    timestamp: datetime = Field(default_factory=utcnow)


class SystemState(BaseModel):
    """Everything LoadState/SaveState exchange with a persistence backend."""

    experts: List[Expert] = Field(default_factory=list)
    knowledge: Dict[str, KnowledgeRecord] = Field(default_factory=dict)
    logs: List[LogEntry] = Field(default_factory=list)
    saved_at: datetime = Field(default_factory=utcnow)
