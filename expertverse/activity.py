"""Activity log: a bounded, newest-first record of what the experts did."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, List, Optional, Sequence
from uuid import uuid4

from .config import Config
from .scheduler import TaskEvent
from .schemas import ChatResult, Expert, ExpertStatus, LogAction, LogEntry, TaskKind, utcnow

SYSTEM_NAME = "System"

_LEARNING_ACTIONS = {
    TaskKind.IMPROVE: "Self-Improved",
    TaskKind.TRAIN: "Trained",
    TaskKind.RESEARCH: "Researched",
}


@dataclass(frozen=True)
class ActivityStats:
    active_experts: int
    total_learnings: int
    collaborations: int


def _shorten(text: str, limit: int = 30) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else f"{text[:limit]}..."


class ActivityLog:
    """Collects LogEntry records from scheduler events and direct calls.

    Register ``on_task_event`` as a scheduler listener. Entries are kept
    newest first and the oldest are dropped past ``limit``.
    """

    def __init__(self, limit: Optional[int] = None, entries: Iterable[LogEntry] = ()) -> None:
        self.limit = limit or Config.ACTIVITY_LOG_LIMIT
        self._entries: Deque[LogEntry] = deque(maxlen=self.limit)
        self.load(entries)

    def record(self, expert_id: str, expert_name: str, action: LogAction, details: str) -> LogEntry:
        entry = LogEntry(
            id=uuid4().hex[:9],
            expert_id=expert_id,
            expert_name=expert_name,
            action=action,
            details=details,
            timestamp=utcnow(),
        )
        self._entries.appendleft(entry)
        return entry

    def entries(self, *, action: Optional[LogAction] = None, expert_id: Optional[str] = None) -> List[LogEntry]:
        selected = list(self._entries)
        if action is not None:
            selected = [entry for entry in selected if entry.action == action]
        if expert_id is not None:
            selected = [entry for entry in selected if entry.expert_id == expert_id]
        return selected

    def load(self, entries: Iterable[LogEntry]) -> None:
        """Replace the log with ``entries`` (newest first, as persisted)."""
        self._entries.clear()
        self._entries.extend(list(entries)[: self.limit])

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self, experts: Sequence[Expert]) -> ActivityStats:
        return ActivityStats(
            active_experts=sum(1 for expert in experts if expert.status == ExpertStatus.ACTIVE),
            total_learnings=sum(expert.learnings for expert in experts),
            collaborations=sum(1 for entry in self._entries if entry.action == "Collaboration"),
        )

    # ------------------------------------------------------------------
    # Scheduler listener
    # ------------------------------------------------------------------

    def on_task_event(self, event: TaskEvent) -> None:
        task = event.task
        name = event.expert.name if event.expert else task.target_agent_id

        if event.kind == "queued":
            self.record(task.target_agent_id, SYSTEM_NAME, "Task Queued", f"{task.kind.value}: {task.description}")
        elif event.kind == "reply" and isinstance(event.result, ChatResult):
            collaboration = event.result.collaboration
            if collaboration is not None:
                self.record(
                    task.target_agent_id,
                    name,
                    "Collaboration",
                    f'Consulted {collaboration.with_expert_name} regarding: "{collaboration.reason}"',
                )
            question = getattr(task.payload, "message", None) or getattr(task.payload, "problem", "")
            self.record(task.target_agent_id, name, "Queried", f'Answered: "{_shorten(question)}"')
        elif event.kind == "completed":
            action = _LEARNING_ACTIONS.get(task.kind)
            if action is not None:
                summary = getattr(event.result, "summary", "") or task.description
                self.record(task.target_agent_id, name, action, f"v{event.version}: {summary}")
            self.record(task.target_agent_id, name, "Task Complete", task.description)
        elif event.kind == "failed":
            self.record(
                task.target_agent_id,
                SYSTEM_NAME,
                "Error",
                f"Task failed: {task.description} ({event.error})",
            )
