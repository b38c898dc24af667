"""
Agent registry: the set of experts and their visible status.

The registry is the single owner of Expert records. Every mutation replaces
the affected record with a validated copy and rebuilds an immutable snapshot
tuple (copy-on-write), so observers reading ``snapshot()`` never see a torn
or half-updated expert.

Status transitions go through dedicated helpers rather than free-form field
assignment:

    idle/active --mark_queued--> queued --mark_thinking--> thinking
    thinking --pair_collaboration--> collaborating (both experts at once)
    any --restore--> active/idle (collaboration cleared)
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import DuplicateAgent, InvalidTarget
from .knowledge import KnowledgeStore
from .logging_utils import log_error
from .schemas import (
    BUSY_STATUSES,
    Collaboration,
    Expert,
    ExpertStatus,
    HistoryEntry,
    KnowledgeArtifact,
    utcnow,
)

RegistryObserver = Callable[[Tuple[Expert, ...]], None]


class AgentRegistry:
    """Owns Expert records and links them to the KnowledgeStore."""

    def __init__(self, knowledge: Optional[KnowledgeStore] = None) -> None:
        self.knowledge = knowledge or KnowledgeStore()
        self._experts: Dict[str, Expert] = {}
        self._snapshot: Tuple[Expert, ...] = ()
        self._observers: List[RegistryObserver] = []

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def register(
        self,
        expert: Expert,
        expertise: str,
        *,
        history: Iterable[HistoryEntry] = (),
    ) -> Expert:
        """Add an expert together with its current knowledge.

        ``expert.version`` is used as the version of ``expertise`` so seeded
        experts can start beyond v1.

        Raises:
            DuplicateAgent: If the id is already registered.
        """

        if expert.id in self._experts:
            raise DuplicateAgent(expert.id)
        self.knowledge.register(expert.id, expertise, version=expert.version, history=history)
        self._experts[expert.id] = expert.with_changes()
        self._publish()
        return self.get(expert.id)

    def adopt(self, expert: Expert) -> None:
        """Insert an expert whose knowledge is already in the store (state restore)."""

        if expert.id not in self.knowledge:
            raise InvalidTarget(expert.id, self.knowledge.export().keys())
        current = self.knowledge.current(expert.id)
        self._experts[expert.id] = expert.with_changes(version=current.version)
        self._publish()

    def remove(self, agent_id: str) -> None:
        self._require(agent_id)
        del self._experts[agent_id]
        self.knowledge.forget(agent_id)
        self._publish()

    def clear(self) -> None:
        for agent_id in list(self._experts):
            self.knowledge.forget(agent_id)
        self._experts = {}
        self._publish()

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._experts

    def __len__(self) -> int:
        return len(self._experts)

    def ids(self) -> List[str]:
        return list(self._experts)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, agent_id: str) -> Expert:
        """Return a copy of the expert record.

        Raises:
            InvalidTarget: If the id is unknown.
        """

        return self._require(agent_id).model_copy(deep=True)

    def find(self, agent_id: str) -> Optional[Expert]:
        expert = self._experts.get(agent_id)
        return expert.model_copy(deep=True) if expert else None

    def snapshot(self) -> Tuple[Expert, ...]:
        """Immutable view of all experts in registration order."""
        return self._snapshot

    def knowledge_of(self, agent_id: str) -> KnowledgeArtifact:
        self._require(agent_id)
        return self.knowledge.current(agent_id)

    def subscribe(self, observer: RegistryObserver) -> None:
        """Call ``observer`` with a fresh snapshot after every mutation."""
        self._observers.append(observer)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def mark_queued(self, agent_id: str) -> Expert:
        """Flag that work is waiting for this expert.

        Experts already working keep their busy status; the queued flag is
        only visual feedback for otherwise idle experts.
        """

        expert = self._require(agent_id)
        if expert.status in BUSY_STATUSES:
            return expert.model_copy(deep=True)
        return self._replace(expert.with_changes(status=ExpertStatus.QUEUED, collaboration=None))

    def mark_thinking(self, agent_id: str) -> Expert:
        expert = self._require(agent_id)
        return self._replace(expert.with_changes(status=ExpertStatus.THINKING, collaboration=None))

    def pair_collaboration(self, requester_id: str, peer_id: str, *, topic: str) -> Tuple[Expert, Expert]:
        """Put two experts into ``collaborating`` with one published snapshot.

        Both records are validated before either is stored, so observers see
        both experts flip together or neither.
        """

        requester = self._require(requester_id)
        peer = self._require(peer_id)
        if requester_id == peer_id:
            raise ValueError(f"Expert {requester_id} cannot collaborate with itself")
        updated_requester = requester.with_changes(
            status=ExpertStatus.COLLABORATING,
            collaboration=Collaboration(peer_id=peer.id, peer_name=peer.name, topic=topic),
        )
        updated_peer = peer.with_changes(
            status=ExpertStatus.COLLABORATING,
            collaboration=Collaboration(peer_id=requester.id, peer_name=requester.name, topic=topic),
        )
        self._replace_many(updated_requester, updated_peer)
        return updated_requester.model_copy(deep=True), updated_peer.model_copy(deep=True)

    def unpair_collaboration(
        self,
        requester_id: str,
        peer_id: str,
        *,
        requester_status: ExpertStatus,
        peer_status: ExpertStatus,
    ) -> None:
        """Release both sides of a handoff with one published snapshot.

        A side that is no longer collaborating with the other (already
        released, or removed from the registry) is left alone.
        """

        updates: List[Expert] = []
        for agent_id, other_id, status in (
            (requester_id, peer_id, requester_status),
            (peer_id, requester_id, peer_status),
        ):
            expert = self._experts.get(agent_id)
            if expert is None or expert.collaboration is None:
                continue
            if expert.collaboration.peer_id != other_id:
                continue
            updates.append(expert.with_changes(status=status, collaboration=None))
        if updates:
            self._replace_many(*updates)

    def restore(self, agent_id: str, status: ExpertStatus = ExpertStatus.ACTIVE) -> Expert:
        """Return an expert to ``status`` and drop any collaboration details."""

        expert = self._require(agent_id)
        return self._replace(expert.with_changes(status=status, collaboration=None))

    def set_status(self, agent_id: str, status: ExpertStatus) -> Expert:
        """Set a non-collaborating status directly (e.g. ``learning`` for manual edits)."""

        if status == ExpertStatus.COLLABORATING:
            raise ValueError("Use pair_collaboration() to start collaborating")
        return self.restore(agent_id, status)

    # ------------------------------------------------------------------
    # Knowledge bookkeeping
    # ------------------------------------------------------------------

    def record_learning(self, agent_id: str) -> Expert:
        """Sync the version mirror after a learning update and bump ``learnings``."""

        expert = self._require(agent_id)
        current = self.knowledge.current(agent_id)
        return self._replace(
            expert.with_changes(
                version=current.version,
                learnings=expert.learnings + 1,
                last_updated=utcnow(),
            )
        )

    def sync_version(self, agent_id: str) -> Expert:
        """Sync the version mirror without counting a learning (reverts)."""

        expert = self._require(agent_id)
        current = self.knowledge.current(agent_id)
        return self._replace(expert.with_changes(version=current.version, last_updated=utcnow()))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, agent_id: str) -> Expert:
        try:
            return self._experts[agent_id]
        except KeyError:
            raise InvalidTarget(agent_id, self._experts.keys()) from None

    def _replace(self, expert: Expert) -> Expert:
        self._experts[expert.id] = expert
        self._publish()
        return expert.model_copy(deep=True)

    def _replace_many(self, *experts: Expert) -> None:
        for expert in experts:
            self._experts[expert.id] = expert
        self._publish()

    def _publish(self) -> None:
        self._snapshot = tuple(expert.model_copy(deep=True) for expert in self._experts.values())
        for observer in self._observers:
            try:
                observer(self._snapshot)
            except Exception as exc:  # pragma: no cover - diagnostic hook
                log_error(f"[Registry] Observer failed: {exc}")
