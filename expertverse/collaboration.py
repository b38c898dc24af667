"""
Collaboration coordinator for expert-to-expert handoffs.

A handoff is triggered mid-task when a handler decides the requester needs a
colleague's knowledge. The peer is named by free-text model output, so it is
resolved with best-effort fuzzy matching rather than an id lookup.

Protocol:
1. begin_handoff(requester, hint, reason): resolve the peer. No match is a
   no-op (the task continues with the requester's own knowledge). A match
   flips BOTH experts to ``collaborating`` in one registry update.
2. end_handoff(requester, peer): release both experts. Idempotent, so the
   scheduler can call it unconditionally on success and failure paths.
3. release(requester): end every open handoff of a requester (scheduler
   cleanup).
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import HandoffTargetNotFound
from .logging_utils import log_handoff, log_info
from .registry import AgentRegistry
from .schemas import Expert, ExpertStatus, utcnow

DEFAULT_MATCH_CUTOFF = 0.8


def resolve_peer(
    hint: str,
    candidates: Iterable[Expert],
    *,
    exclude_id: Optional[str] = None,
    cutoff: float = DEFAULT_MATCH_CUTOFF,
) -> Optional[Expert]:
    """Best-effort lookup of an expert from a free-text name hint.

    Matching order:
    1. Case-insensitive exact name match
    2. Substring containment in either direction (hint in name, or name in
       hint), first candidate in registry order wins
    3. Closest name by ``difflib`` ratio at or above ``cutoff`` (tolerates
       typos such as "Datbase Expert")

    This is not an identity lookup. Callers that need precision must route
    by expert id.
    """

    needle = hint.strip().lower()
    if not needle:
        return None

    pool = [expert for expert in candidates if expert.id != exclude_id]

    for expert in pool:
        if expert.name.lower() == needle:
            return expert

    for expert in pool:
        name = expert.name.lower()
        if needle in name or name in needle:
            return expert

    by_name: Dict[str, Expert] = {}
    for expert in pool:
        by_name.setdefault(expert.name.lower(), expert)
    close = difflib.get_close_matches(needle, list(by_name), n=1, cutoff=cutoff)
    if close:
        return by_name[close[0]]
    return None


@dataclass(frozen=True)
class Handoff:
    """An open consultation between two experts."""

    requester_id: str
    peer_id: str
    topic: str
    started_at: datetime = field(default_factory=utcnow)


class CollaborationCoordinator:
    """Runs the paired-entry / paired-exit handoff protocol on the registry."""

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        match_cutoff: float = DEFAULT_MATCH_CUTOFF,
        pending_work: Optional[Callable[[str], bool]] = None,
    ) -> None:
        """
        Args:
            registry: Registry whose experts are paired and released
            match_cutoff: difflib ratio needed for a typo-tolerant match
            pending_work: Reports whether an expert still has queued tasks,
                checked when a handoff ends. The scheduler installs its own
                queue lookup when none is given.
        """

        self.registry = registry
        self.match_cutoff = match_cutoff
        self.pending_work = pending_work
        self._open: Dict[Tuple[str, str], Handoff] = {}

    def resolve(self, requester_id: str, peer_hint: str) -> Optional[Expert]:
        return resolve_peer(
            peer_hint,
            self.registry.snapshot(),
            exclude_id=requester_id,
            cutoff=self.match_cutoff,
        )

    def require_peer(self, requester_id: str, peer_hint: str) -> Expert:
        """Strict variant of :meth:`resolve`.

        Raises:
            HandoffTargetNotFound: If nobody matches the hint.
        """

        peer = self.resolve(requester_id, peer_hint)
        if peer is None:
            raise HandoffTargetNotFound(peer_hint)
        return peer

    def begin_handoff(self, requester_id: str, peer_hint: str, reason: str) -> Optional[str]:
        """Start a consultation and return the peer id, or None if no match.

        A requester consults one peer at a time; any handoff it still has
        open is released first.
        """

        requester = self.registry.get(requester_id)
        peer = self.resolve(requester_id, peer_hint)
        if peer is None:
            log_info(
                f"[Handoff] {requester.name} asked for '{peer_hint}' but no expert matched; "
                "continuing solo"
            )
            return None

        self.release(requester_id)
        self.registry.pair_collaboration(requester_id, peer.id, topic=reason)
        self._open[(requester_id, peer.id)] = Handoff(requester_id=requester_id, peer_id=peer.id, topic=reason)
        log_handoff(f"[Handoff] {requester.name} is consulting {peer.name}: {reason}")
        return peer.id

    def end_handoff(self, requester_id: str, peer_id: str, *, resume_requester: bool = True) -> None:
        """Release both experts of a handoff.

        The requester goes back to ``thinking`` when its task is still
        running (``resume_requester``), otherwise to ``active``. The peer goes
        back to ``active``, or to ``queued`` if tasks are waiting for it at
        release time. Calling this for a handoff that is already closed does
        nothing.
        """

        handoff = self._open.pop((requester_id, peer_id), None)
        if handoff is None:
            return
        has_work = self.pending_work is not None and self.pending_work(peer_id)
        self.registry.unpair_collaboration(
            requester_id,
            peer_id,
            requester_status=ExpertStatus.THINKING if resume_requester else ExpertStatus.ACTIVE,
            peer_status=ExpertStatus.QUEUED if has_work else ExpertStatus.ACTIVE,
        )

    def release(self, requester_id: str, *, resume_requester: bool = True) -> List[str]:
        """End every open handoff started by ``requester_id``; return the peer ids."""

        peers = [peer_id for (req_id, peer_id) in self._open if req_id == requester_id]
        for peer_id in peers:
            self.end_handoff(requester_id, peer_id, resume_requester=resume_requester)
        return peers

    def open_handoffs(self) -> List[Handoff]:
        return list(self._open.values())

    def is_open(self, requester_id: str, peer_id: str) -> bool:
        return (requester_id, peer_id) in self._open
