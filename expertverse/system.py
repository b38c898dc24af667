"""
ExpertSystem: the facade that wires registry, knowledge, scheduler,
collaboration, activity log and persistence together.

Typical session:

    system = ExpertSystem.with_llm()            # or ExpertSystem() offline
    system.seed()                               # default roster
    system.start()                              # background poll loop
    task_id = system.chat("1", "Which index does posts need?")
    ...
    await system.stop()
    await system.save_state()
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Union
from uuid import uuid4

from .activity import ActivityLog, ActivityStats
from .collaboration import CollaborationCoordinator, Handoff, resolve_peer
from .config import Config
from .errors import InvalidTarget
from .handlers import HandlerMap, build_llm_handlers, build_rule_based_handlers
from .knowledge import DiffLine, KnowledgeStore, compute_diff
from .llm_calls import MetaKind, WarRoomTurn, generate_meta_content, war_room_turn
from .logging_utils import log_error, log_info, log_llm, log_success
from .persistence import InMemoryPersistence, PersistenceStrategy
from .registry import AgentRegistry
from .roster import RosterEntry, default_roster
from .scheduler import TaskEvent, TaskScheduler
from .schemas import (
    MODERATOR_ID,
    STEADY_STATUSES,
    AgentTask,
    ChatMessage,
    ChatPayload,
    ChatResult,
    CollaborationPayload,
    Expert,
    ExpertStatus,
    ExpertType,
    HistoryEntry,
    ImprovePayload,
    KnowledgeArtifact,
    PeerKnowledge,
    ResearchPayload,
    SystemState,
    TaskKind,
    TaskPayload,
    TaskPriority,
    TrainPayload,
    WarRoomMessage,
    WarRoomSession,
)

# Observation fed to background self-improvement, per expert type
SELF_IMPROVE_TOPICS: Dict[ExpertType, str] = {
    ExpertType.DATABASE: "Observed slow query on 'users' table index.",
    ExpertType.API: "New endpoint POST /analytics added with strict validation.",
    ExpertType.BACKEND: "Worker queue latency increased during batch processing.",
    ExpertType.WEBSOCKET: "Detected connection drops on channel 'global' during peak load.",
    ExpertType.FRONTEND: "Button component deprecated 'ghost' variant in favor of 'text'.",
    ExpertType.META: "Meta agent structure optimized.",
}
DEFAULT_SELF_IMPROVE_TOPIC = "General optimization found."

# Safety limit on War Room debate length
WAR_ROOM_MAX_TURNS = 10


def _preview(text: str, limit: int = 20) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def _war_room_message(turn: WarRoomTurn, experts: List[Expert]) -> WarRoomMessage:
    """Attribute a generated turn to the moderator or to a participant.

    The model names the speaker in free text, so an unknown id falls back to
    a fuzzy match on the speaker name.
    """

    if turn.speaker_id.strip().lower() == MODERATOR_ID:
        speaker_id, speaker_name, role = MODERATOR_ID, "Moderator", "moderator"
    else:
        speaker = next((expert for expert in experts if expert.id == turn.speaker_id), None)
        if speaker is None:
            speaker = resolve_peer(turn.speaker_name, experts)
        if speaker is None:
            speaker_id, speaker_name = turn.speaker_id, turn.speaker_name
        else:
            speaker_id, speaker_name = speaker.id, speaker.name
        role = "expert"
    return WarRoomMessage(
        id=uuid4().hex[:9],
        speaker_id=speaker_id,
        speaker_name=speaker_name,
        role=role,
        content=turn.content,
        is_consensus=turn.is_consensus,
    )


class ExpertSystem:
    """Entry point for callers (CLI demos, services, tests)."""

    def __init__(
        self,
        handlers: Optional[HandlerMap] = None,
        *,
        persistence: Optional[PersistenceStrategy] = None,
        poll_interval: Optional[float] = None,
        aging_interval: Optional[float] = None,
        activity_limit: Optional[int] = None,
        reply_limit: Optional[int] = None,
        llm_provider: Optional[str] = None,
        llm_model: Optional[str] = None,
    ) -> None:
        """Build a system with its own registry, knowledge store and scheduler.

        Args:
            handlers: Task handlers per kind. Defaults to the deterministic
                handlers, so a system works offline out of the box.
            persistence: Backend used by load_state()/save_state()
                (in-memory by default)
            poll_interval: Scheduler poll interval in seconds
            aging_interval: Optional priority aging for the scheduler
            activity_limit: Max activity log entries kept
            reply_limit: Max chat/collaboration replies kept for reply_for()
            llm_provider/llm_model: Used by generate_meta() and war_room()
        """

        self.knowledge = KnowledgeStore()
        self.registry = AgentRegistry(self.knowledge)
        self.coordinator = CollaborationCoordinator(self.registry)
        self.scheduler = TaskScheduler(
            self.registry,
            handlers if handlers is not None else build_rule_based_handlers(),
            coordinator=self.coordinator,
            poll_interval=poll_interval,
            aging_interval=aging_interval,
        )
        self.activity = ActivityLog(limit=activity_limit)
        self.persistence = persistence or InMemoryPersistence()
        self.llm_provider = llm_provider
        self.llm_model = llm_model

        self._transcripts: Dict[str, List[ChatMessage]] = {}
        self.reply_limit = reply_limit or Config.REPLY_LIMIT
        self._replies: OrderedDict[str, ChatResult] = OrderedDict()

        self.scheduler.add_listener(self.activity.on_task_event)
        self.scheduler.add_listener(self._on_task_event)

    @classmethod
    def with_llm(
        cls,
        llm_provider: Optional[str] = None,
        llm_model: Optional[str] = None,
        **kwargs,
    ) -> "ExpertSystem":
        """Build a system whose handlers call the configured LLM."""

        provider = llm_provider or Config.LLM_PROVIDER
        model = llm_model or Config.LLM_MODEL
        return cls(
            build_llm_handlers(provider, model),
            llm_provider=provider,
            llm_model=model,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Experts
    # ------------------------------------------------------------------

    def seed(self, entries: Optional[Iterable[RosterEntry]] = None) -> List[Expert]:
        """Register roster entries (the default roster if omitted)."""

        seeded = []
        for entry in entries if entries is not None else default_roster():
            seeded.append(self.registry.register(entry.expert, entry.expertise))
        log_info(f"Seeded {len(seeded)} experts")
        return seeded

    def create_expert(
        self,
        name: str,
        expert_type: Union[ExpertType, str],
        description: str,
        expertise: str,
        *,
        expert_id: Optional[str] = None,
    ) -> Expert:
        expert = Expert(
            id=expert_id or uuid4().hex[:9],
            name=name,
            type=ExpertType(expert_type),
            description=description,
            status=ExpertStatus.IDLE,
        )
        created = self.registry.register(expert, expertise)
        self.activity.record(created.id, created.name, "Created", "New expert initialized")
        return created

    def get_agent(self, agent_id: str) -> Expert:
        return self.registry.get(agent_id)

    def list_agents(self) -> List[Expert]:
        return list(self.registry.snapshot())

    def knowledge_of(self, agent_id: str) -> KnowledgeArtifact:
        return self.registry.knowledge_of(agent_id)

    def history_of(self, agent_id: str) -> List[HistoryEntry]:
        self.registry.get(agent_id)
        return self.knowledge.history(agent_id)

    def stats(self) -> ActivityStats:
        return self.activity.stats(self.registry.snapshot())

    def active_collaborations(self) -> List[Handoff]:
        return self.coordinator.open_handoffs()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def submit_task(
        self,
        kind: TaskKind,
        priority: TaskPriority,
        agent_id: str,
        payload: Union[TaskPayload, dict],
        description: str = "",
    ) -> str:
        return self.scheduler.submit(kind, priority, agent_id, payload, description)

    def get_pending_tasks(self) -> List[AgentTask]:
        return self.scheduler.pending_tasks()

    def get_failed_tasks(self) -> List[AgentTask]:
        return self.scheduler.failed_tasks()

    def chat(self, agent_id: str, message: str) -> str:
        """Queue a user question (CRITICAL) and record it in the transcript."""

        expert = self.registry.get(agent_id)
        transcript = self._transcripts.setdefault(agent_id, [])
        payload = ChatPayload(message=message, history=[turn.model_copy() for turn in transcript])
        task_id = self.submit_task(
            TaskKind.CHAT,
            TaskPriority.CRITICAL,
            expert.id,
            payload,
            f"User query: {_preview(message)}",
        )
        transcript.append(ChatMessage(role="user", text=message))
        return task_id

    def self_improve(self, agent_id: str, context: Optional[str] = None) -> str:
        """Queue a background self-improvement cycle (LOW)."""

        expert = self.registry.get(agent_id)
        observation = context or SELF_IMPROVE_TOPICS.get(expert.type, DEFAULT_SELF_IMPROVE_TOPIC)
        return self.submit_task(
            TaskKind.IMPROVE,
            TaskPriority.LOW,
            expert.id,
            ImprovePayload(context=observation),
            f"Self-improvement cycle: {expert.name}",
        )

    def train(self, agent_id: str, data: str) -> str:
        """Queue knowledge ingestion of raw material (HIGH)."""

        expert = self.registry.get(agent_id)
        return self.submit_task(
            TaskKind.TRAIN,
            TaskPriority.HIGH,
            expert.id,
            TrainPayload(data=data),
            f"Knowledge Ingestion for {expert.name}",
        )

    def research(self, agent_id: str, topic: str) -> str:
        """Queue topic research (HIGH)."""

        expert = self.registry.get(agent_id)
        return self.submit_task(
            TaskKind.RESEARCH,
            TaskPriority.HIGH,
            expert.id,
            ResearchPayload(topic=topic),
            f"Research: {topic}",
        )

    def collaborate(self, agent_id: str, problem: str, peer_hint: Optional[str] = None) -> str:
        """Queue a problem to solve together with a colleague (MEDIUM)."""

        expert = self.registry.get(agent_id)
        return self.submit_task(
            TaskKind.COLLABORATION,
            TaskPriority.MEDIUM,
            expert.id,
            CollaborationPayload(problem=problem, peer_hint=peer_hint),
            f"Collaboration: {_preview(problem)}",
        )

    def transcript(self, agent_id: str) -> List[ChatMessage]:
        return [turn.model_copy() for turn in self._transcripts.get(agent_id, [])]

    def reply_for(self, task_id: str) -> Optional[ChatResult]:
        return self._replies.get(task_id)

    # ------------------------------------------------------------------
    # Knowledge
    # ------------------------------------------------------------------

    def revert_agent_knowledge(self, agent_id: str, target_version: int) -> int:
        """Restore historical knowledge as a new version.

        Raises:
            InvalidTarget: If the agent is unknown
            VersionNotFound: If ``target_version`` is not in the history
        """

        expert = self.registry.get(agent_id)
        version = self.knowledge.revert(agent_id, target_version)
        self.registry.sync_version(agent_id)
        self.activity.record(expert.id, expert.name, "Reverted", f"Restored knowledge from v{target_version}")
        return version

    def view_diff(self, agent_id: str, version: int) -> List[DiffLine]:
        """Diff a stored version against the current knowledge."""

        old = self.knowledge.get_version(agent_id, version)
        return compute_diff(old.content, self.knowledge.current(agent_id).content)

    async def generate_meta(self, kind: MetaKind, request: str) -> str:
        """Generate a prompt template, agent spec or skill with the LLM."""

        self._require_llm("generate_meta()")
        return await generate_meta_content(
            kind=kind,
            request=request,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
        )

    # ------------------------------------------------------------------
    # War Room
    # ------------------------------------------------------------------

    async def war_room(
        self,
        topic: str,
        *,
        max_turns: int = WAR_ROOM_MAX_TURNS,
        participant_ids: Optional[Iterable[str]] = None,
    ) -> WarRoomSession:
        """Run a moderated debate between experts on ``topic``.

        Each turn is one LLM call that picks the next speaker (or lets the
        moderator speak). The debate stops at the first consensus turn or
        after ``max_turns``. A failed call ends the session with a moderator
        notice and ``outcome="error"``; the transcript so far is kept.

        The debate reads expert knowledge but never changes experts,
        knowledge or the task queue.

        Raises:
            ValueError: Without LLM configuration, for a blank topic, a
                non-positive ``max_turns`` or an empty participant list.
            InvalidTarget: If a participant id is unknown.
        """

        self._require_llm("war_room()")
        if not topic.strip():
            raise ValueError("War Room topic must not be blank")
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        if participant_ids is None:
            experts = list(self.registry.snapshot())
        else:
            experts = [self.registry.get(agent_id) for agent_id in participant_ids]
        if not experts:
            raise ValueError("War Room needs at least one expert")

        session = WarRoomSession(topic=topic, participant_ids=[expert.id for expert in experts])
        log_info(f"[War Room] {len(experts)} experts debating: {_preview(topic, 60)}")

        while session.turns < max_turns:
            try:
                participants = [
                    PeerKnowledge(expert=expert, knowledge=self.registry.knowledge_of(expert.id))
                    for expert in experts
                ]
                turn = await war_room_turn(
                    problem=topic,
                    history=list(session.messages),
                    participants=participants,
                    llm_provider=self.llm_provider,
                    llm_model=self.llm_model,
                )
            except Exception as exc:
                session.outcome = "error"
                session.error = f"{type(exc).__name__}: {exc}"
                log_error(f"[War Room] Turn {session.turns + 1} failed: {session.error}")
                session.messages.append(
                    WarRoomMessage(
                        id=uuid4().hex[:9],
                        speaker_id=MODERATOR_ID,
                        speaker_name="Moderator",
                        role="moderator",
                        content="Communication link disrupted. Ending session.",
                    )
                )
                break

            message = _war_room_message(turn, experts)
            session.messages.append(message)
            log_llm(f"[War Room] {message.speaker_name}: {_preview(message.content, 60)}")
            if message.is_consensus:
                session.outcome = "consensus"
                log_success(f"[War Room] Consensus after {session.turns} turns")
                break
        else:
            log_info(f"[War Room] Stopped after {max_turns} turns without consensus")

        return session

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def tick(self) -> Optional[AgentTask]:
        return await self.scheduler.tick()

    async def drain(self, *, max_tasks: Optional[int] = None) -> int:
        return await self.scheduler.drain(max_tasks=max_tasks)

    def start(self, poll_interval: Optional[float] = None) -> asyncio.Task:
        return self.scheduler.start(poll_interval)

    async def stop(self) -> None:
        await self.scheduler.stop()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> SystemState:
        return SystemState(
            experts=list(self.registry.snapshot()),
            knowledge=self.knowledge.export(),
            logs=self.activity.entries(),
        )

    def import_state(self, state: SystemState) -> None:
        """Replace experts, knowledge and activity with ``state``.

        Busy statuses from the snapshot are not carried over: nothing is
        running after a restore, so such experts come back ``active``.
        The snapshot is checked in full first; if it is rejected the live
        state is left untouched.

        Raises:
            RuntimeError: If tasks are pending or in flight.
            InvalidTarget: If an expert has no knowledge record.
            ValueError: If a knowledge history is not older than its
                current version.
        """

        if self.scheduler.is_processing or self.scheduler.pending_tasks():
            raise RuntimeError("Cannot replace state while tasks are queued or running")

        staged = KnowledgeStore()
        staged.load(state.knowledge)
        experts = []
        for expert in state.experts:
            if expert.id not in staged:
                raise InvalidTarget(expert.id, state.knowledge.keys())
            status = expert.status if expert.status in STEADY_STATUSES else ExpertStatus.ACTIVE
            experts.append(expert.with_changes(status=status, collaboration=None))

        self.registry.clear()
        self.knowledge.load(state.knowledge)
        for expert in experts:
            self.registry.adopt(expert)
        self.activity.load(state.logs)
        self._transcripts.clear()
        self._replies.clear()

    async def save_state(self) -> None:
        await self.persistence.save_state(self.export_state())
        log_success(f"Saved state for {len(self.registry)} experts")

    async def load_state(self) -> bool:
        """Restore the last saved state. Returns False if nothing was saved."""

        state = await self.persistence.load_state()
        if state is None:
            return False
        self.import_state(state)
        log_success(f"Loaded state for {len(self.registry)} experts")
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_llm(self, operation: str) -> None:
        if not self.llm_provider or not self.llm_model:
            raise ValueError(
                f"{operation} requires LLM configuration. "
                "Build the system with ExpertSystem.with_llm() or pass llm_provider/llm_model."
            )

    def _on_task_event(self, event: TaskEvent) -> None:
        if event.kind != "reply" or not isinstance(event.result, ChatResult):
            return
        self._replies[event.task.id] = event.result
        while len(self._replies) > self.reply_limit:
            self._replies.popitem(last=False)
        if event.task.kind != TaskKind.CHAT:
            return
        transcript = self._transcripts.setdefault(event.task.target_agent_id, [])
        collaboration = event.result.collaboration
        if collaboration is not None:
            transcript.append(
                ChatMessage(
                    role="system",
                    text=f"Collaborating with {collaboration.with_expert_name}... sharing mental models.",
                )
            )
        transcript.append(ChatMessage(role="model", text=event.result.text, sources=event.result.sources))
