"""
Priority task scheduler for expert work.

Coordinates the task lifecycle:
1. submit() validates the target, enqueues a PENDING task, flags the expert
   as queued
2. tick() picks the highest-priority, oldest pending task (single-flight:
   nothing is dispatched while a task is PROCESSING)
3. The expert turns ``thinking`` and the handler for the task kind runs,
   optionally calling the handoff callback to consult a colleague
4. The result is applied (knowledge update with history snapshot, or a
   chat reply emitted to listeners) and the task leaves the live queue
5. Failures mark the task FAILED with the error and keep it for inspection
6. Cleanup always runs: open handoffs are released on both experts and the
   target returns to ``active`` (``idle`` after a failure)

run() drives tick() on a fixed poll interval. Every mutation happens on the
event loop that runs the scheduler, so registry, knowledge store and queue
have exactly one writer.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from .collaboration import CollaborationCoordinator
from .config import Config
from .errors import InvalidTarget, TaskExecutionFailed, UnknownTaskKind
from .handlers import HandlerMap, HandlerResult, TaskContext, TaskHandler, handler_uses_llm
from .knowledge import REASON_IMPROVE, REASON_RESEARCH, REASON_TRAIN
from .logging_utils import (
    log_deterministic,
    log_error,
    log_info,
    log_llm,
    log_success,
)
from .registry import AgentRegistry
from .schemas import (
    AgentTask,
    ChatResult,
    Expert,
    ExpertStatus,
    KnowledgeResult,
    PeerKnowledge,
    TaskKind,
    TaskPayload,
    TaskPriority,
    TaskStatus,
    utcnow,
)

KNOWLEDGE_REASONS: Dict[TaskKind, str] = {
    TaskKind.IMPROVE: REASON_IMPROVE,
    TaskKind.TRAIN: REASON_TRAIN,
    TaskKind.RESEARCH: REASON_RESEARCH,
}
REPLY_KINDS = frozenset({TaskKind.CHAT, TaskKind.COLLABORATION})

TaskEventKind = Literal["queued", "started", "handoff", "reply", "completed", "failed"]


@dataclass(frozen=True)
class TaskEvent:
    """Notification sent to scheduler listeners.

    ``task`` is a copy taken when the event fired. ``result`` is set for
    ``reply`` and ``completed``; ``peer`` for ``handoff``; ``error`` for
    ``failed``.
    """

    kind: TaskEventKind
    task: AgentTask
    expert: Optional[Expert] = None
    result: Optional[HandlerResult] = None
    peer: Optional[Expert] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    version: Optional[int] = None


TaskListener = Callable[[TaskEvent], None]


class TaskScheduler:
    """Single-flight priority scheduler over the agent registry."""

    def __init__(
        self,
        registry: AgentRegistry,
        handlers: Optional[HandlerMap] = None,
        *,
        coordinator: Optional[CollaborationCoordinator] = None,
        poll_interval: Optional[float] = None,
        aging_interval: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        listeners: Optional[List[TaskListener]] = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            registry: Agent registry (and through it, the knowledge store)
            handlers: Mapping of task kind to handler
            coordinator: Collaboration coordinator; one is built on the
                registry if omitted
            poll_interval: Seconds between loop ticks in run()
                (defaults to Config.QUEUE_POLL_INTERVAL_SECONDS)
            aging_interval: Seconds of waiting after which a pending task is
                treated as one band higher. 0/None keeps strict priority.
            clock: Time source for enqueue timestamps and aging
            listeners: Callables receiving TaskEvents
        """

        self.registry = registry
        self.coordinator = coordinator or CollaborationCoordinator(registry)
        if self.coordinator.pending_work is None:
            self.coordinator.pending_work = self.has_pending_for
        self.handlers: HandlerMap = dict(handlers or {})
        self.poll_interval = poll_interval or Config.QUEUE_POLL_INTERVAL_SECONDS
        aging = Config.QUEUE_AGING_SECONDS if aging_interval is None else aging_interval
        self.aging_interval = aging if aging and aging > 0 else None
        self._clock = clock
        self._listeners: List[TaskListener] = list(listeners or [])

        # Live queue: PENDING, PROCESSING and FAILED tasks. Completed tasks
        # are dropped.
        self._tasks: Dict[str, AgentTask] = {}
        self._sequence = itertools.count()
        self._current: Optional[str] = None
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def register_handler(self, kind: TaskKind, handler: TaskHandler) -> None:
        self.handlers[kind] = handler

    def add_listener(self, listener: TaskListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        kind: TaskKind,
        priority: TaskPriority,
        target_agent_id: str,
        payload: Union[TaskPayload, dict],
        description: str = "",
    ) -> str:
        """Enqueue a task and return its id.

        Raises:
            InvalidTarget: If ``target_agent_id`` is not registered. The task
                never enters the queue.
            UnknownTaskKind: If no handler is registered for ``kind``.
            pydantic.ValidationError: If the payload does not fit ``kind``.
        """

        kind = TaskKind(kind)
        if target_agent_id not in self.registry:
            raise InvalidTarget(target_agent_id, self.registry.ids())
        if kind not in self.handlers:
            raise UnknownTaskKind(kind.value)

        task = AgentTask.model_validate(
            {
                "id": uuid4().hex[:12],
                "target_agent_id": target_agent_id,
                "kind": kind,
                "priority": TaskPriority(priority),
                "payload": payload.model_dump() if isinstance(payload, BaseModel) else payload,
                "enqueued_at": self._clock(),
                "sequence": next(self._sequence),
                "description": description or f"{kind.value} for {target_agent_id}",
            }
        )
        self._tasks[task.id] = task
        expert = self.registry.mark_queued(target_agent_id)
        log_deterministic(
            f"[Queue] {task.kind.value} ({task.priority.name}) queued for {expert.name} "
            f"[{len(self._pending())} pending]"
        )
        self._emit(TaskEvent(kind="queued", task=task.model_copy(deep=True), expert=expert))
        return task.id

    def resubmit(self, task_id: str) -> str:
        """Queue a FAILED task again as a new task (no automatic retries)."""

        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.FAILED:
            raise KeyError(f"No failed task with id '{task_id}'")
        new_id = self.submit(task.kind, task.priority, task.target_agent_id, task.payload, task.description)
        del self._tasks[task_id]
        return new_id

    def dismiss_failed(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is not None and task.status == TaskStatus.FAILED:
            del self._tasks[task_id]

    # ------------------------------------------------------------------
    # Queue inspection
    # ------------------------------------------------------------------

    def pending_tasks(self) -> List[AgentTask]:
        """Pending tasks in the order they would be dispatched."""
        now = self._clock()
        ordered = sorted(self._pending(), key=lambda task: self._dispatch_key(task, now))
        return [task.model_copy(deep=True) for task in ordered]

    def failed_tasks(self) -> List[AgentTask]:
        failed = [task for task in self._tasks.values() if task.status == TaskStatus.FAILED]
        return [task.model_copy(deep=True) for task in failed]

    def current_task(self) -> Optional[AgentTask]:
        if self._current is None:
            return None
        return self._tasks[self._current].model_copy(deep=True)

    def get_task(self, task_id: str) -> Optional[AgentTask]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def has_pending_for(self, agent_id: str) -> bool:
        return any(task.target_agent_id == agent_id for task in self._pending())

    @property
    def is_processing(self) -> bool:
        return self._current is not None

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Scheduling loop
    # ------------------------------------------------------------------

    async def tick(self) -> Optional[AgentTask]:
        """Run one scheduling step.

        Returns the dispatched task in its terminal state, or None when a
        task is already in flight or nothing is pending. Handler failures are
        recorded on the task and never raised from here.
        """

        if self._current is not None:
            return None
        task = self._select()
        if task is None:
            return None

        # Claim the single flight slot before the first await
        self._current = task.id
        task.status = TaskStatus.PROCESSING
        agent_id = task.target_agent_id
        succeeded = False

        try:
            expert = self.registry.mark_thinking(agent_id)
            handler = self.handlers.get(task.kind)
            if handler is None:
                raise UnknownTaskKind(task.kind.value)

            tag = log_llm if handler_uses_llm(handler) else log_deterministic
            tag(f"[{expert.name}] {task.kind.value}: {task.description}")
            self._emit(TaskEvent(kind="started", task=task.model_copy(deep=True), expert=expert))

            context = TaskContext(
                task_id=task.id,
                kind=task.kind,
                expert=expert,
                knowledge=self.registry.knowledge_of(agent_id),
                peers=tuple(peer for peer in self.registry.snapshot() if peer.id != agent_id),
            )
            result = await handler.execute(context, task.payload, self._handoff_callback(task))
            version = self._apply_result(task, result)
            succeeded = True
        except Exception as exc:
            failure = TaskExecutionFailed(task_id=task.id, kind=task.kind.value, underlying=exc)
            task.status = TaskStatus.FAILED
            task.error = f"{type(exc).__name__}: {exc}"
            log_error(str(failure))
        finally:
            if task.status == TaskStatus.PROCESSING and not succeeded:
                # Cancelled mid-flight (BaseException); still leave a record
                task.status = TaskStatus.FAILED
                task.error = "Cancelled"
            self.coordinator.release(agent_id, resume_requester=False)
            final_status = ExpertStatus.ACTIVE if succeeded else ExpertStatus.IDLE
            final_expert = None
            if agent_id in self.registry:
                final_expert = self.registry.restore(agent_id, final_status)
            self._current = None

        if succeeded:
            task.status = TaskStatus.COMPLETED
            del self._tasks[task.id]
            log_success(f"[{final_expert.name if final_expert else agent_id}] {task.kind.value} complete")
            self._emit(
                TaskEvent(
                    kind="completed",
                    task=task.model_copy(deep=True),
                    expert=final_expert,
                    result=result,
                    version=version,
                )
            )
        else:
            self._emit(
                TaskEvent(
                    kind="failed",
                    task=task.model_copy(deep=True),
                    expert=final_expert,
                    error=task.error,
                )
            )
        return task.model_copy(deep=True)

    async def drain(self, *, max_tasks: Optional[int] = None) -> int:
        """Tick until no task is pending; return how many tasks were dispatched."""

        processed = 0
        while self._pending() and (max_tasks is None or processed < max_tasks):
            task = await self.tick()
            if task is None:
                # Another loop owns the in-flight task; let it finish
                await asyncio.sleep(min(self.poll_interval, 0.05))
                continue
            processed += 1
        return processed

    async def run(self, poll_interval: Optional[float] = None) -> None:
        """Poll the queue until stop() is called."""

        interval = poll_interval or self.poll_interval
        self._running = True
        log_info(f"[Queue] Scheduler running (poll every {interval}s)")
        try:
            while self._running:
                await self.tick()
                await asyncio.sleep(interval)
        finally:
            self._running = False

    def start(self, poll_interval: Optional[float] = None) -> asyncio.Task:
        """Run the poll loop as a background task on the current event loop."""

        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self.run(poll_interval))
        return self._loop_task

    async def stop(self) -> None:
        """Stop the poll loop after the in-flight task (if any) finishes."""

        self._running = False
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pending(self) -> List[AgentTask]:
        return [task for task in self._tasks.values() if task.status == TaskStatus.PENDING]

    def _effective_priority(self, task: AgentTask, now: datetime) -> int:
        if self.aging_interval is None:
            return int(task.priority)
        waited = max((now - task.enqueued_at).total_seconds(), 0.0)
        bump = int(waited // self.aging_interval)
        return min(int(task.priority) + bump, int(TaskPriority.CRITICAL))

    def _dispatch_key(self, task: AgentTask, now: datetime) -> tuple:
        return (-self._effective_priority(task, now), task.enqueued_at, task.sequence)

    def _select(self) -> Optional[AgentTask]:
        pending = self._pending()
        if not pending:
            return None
        now = self._clock()
        return min(pending, key=lambda task: self._dispatch_key(task, now))

    def _handoff_callback(self, task: AgentTask) -> Callable[[str, str], Optional[PeerKnowledge]]:
        requester_id = task.target_agent_id

        def on_handoff(peer_hint: str, reason: str) -> Optional[PeerKnowledge]:
            if self._current != task.id:
                # Callback leaked past the end of its task
                return None
            peer_id = self.coordinator.begin_handoff(requester_id, peer_hint, reason)
            if peer_id is None:
                return None
            peer = self.registry.get(peer_id)
            self._emit(
                TaskEvent(
                    kind="handoff",
                    task=task.model_copy(deep=True),
                    expert=self.registry.get(requester_id),
                    peer=peer,
                    reason=reason,
                )
            )
            return PeerKnowledge(expert=peer, knowledge=self.registry.knowledge_of(peer_id))

        return on_handoff

    def _apply_result(self, task: AgentTask, result: HandlerResult) -> Optional[int]:
        agent_id = task.target_agent_id
        if task.kind in KNOWLEDGE_REASONS:
            if not isinstance(result, KnowledgeResult):
                raise TypeError(
                    f"{task.kind.value} handler must return KnowledgeResult, got {type(result).__name__}"
                )
            version = self.registry.knowledge.update(
                agent_id, result.new_expertise, KNOWLEDGE_REASONS[task.kind]
            )
            self.registry.record_learning(agent_id)
            return version

        if task.kind in REPLY_KINDS:
            if not isinstance(result, ChatResult):
                raise TypeError(
                    f"{task.kind.value} handler must return ChatResult, got {type(result).__name__}"
                )
            self._emit(
                TaskEvent(
                    kind="reply",
                    task=task.model_copy(deep=True),
                    expert=self.registry.get(agent_id),
                    result=result,
                )
            )
            return None

        raise UnknownTaskKind(task.kind.value)

    def _emit(self, event: TaskEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:  # pragma: no cover - diagnostic hook
                log_error(f"[Queue] Listener failed on {event.kind}: {exc}")
