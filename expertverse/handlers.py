"""Task handlers: the external work the scheduler dispatches to.

Every task kind maps to one handler with the uniform shape::

    await handler.execute(context, payload, on_handoff) -> ChatResult | KnowledgeResult

``on_handoff(peer_hint, reason)`` is synchronous. It returns the peer's
knowledge when the hint matched a colleague (both experts are now
``collaborating``) or ``None`` when nobody matched. A handler raises to
report failure; the scheduler records the error on the task.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol, Sequence, Union

from .llm_calls import (
    HandoffCallback,
    chat_with_expert,
    research_topic,
    self_improve_expert,
    train_expert,
)
from .schemas import (
    ChatPayload,
    ChatResult,
    CollaborationPayload,
    CollaborationRecord,
    Expert,
    ImprovePayload,
    KnowledgeArtifact,
    KnowledgeResult,
    ResearchPayload,
    TaskKind,
    TaskPayload,
    TrainPayload,
)

HandlerResult = Union[ChatResult, KnowledgeResult]


@dataclass(frozen=True)
class TaskContext:
    """What a handler knows about the task it is running."""

    task_id: str
    kind: TaskKind
    expert: Expert
    knowledge: KnowledgeArtifact
    # Other experts at dispatch time, for consultation prompts
    peers: Sequence[Expert] = field(default_factory=tuple)


class TaskHandler(Protocol):
    """Protocol for task execution strategies."""

    async def execute(
        self,
        context: TaskContext,
        payload: TaskPayload,
        on_handoff: HandoffCallback,
    ) -> HandlerResult:
        ...

    def uses_llm(self) -> bool:
        """Return True if this handler performs an LLM call."""
        ...


HandlerMap = Dict[TaskKind, TaskHandler]


# ============================================================================
# LLM-backed handlers
# ============================================================================


class _LLMHandler:
    def __init__(self, *, llm_provider: str, llm_model: str) -> None:
        if not llm_provider or not llm_model:
            raise ValueError(
                f"{type(self).__name__} requires LLM configuration. "
                "Set LLM_PROVIDER and LLM_MODEL environment variables, or use "
                "build_rule_based_handlers() for offline runs."
            )
        self.llm_provider = llm_provider
        self.llm_model = llm_model

    def uses_llm(self) -> bool:
        return True


class LLMChatHandler(_LLMHandler):
    async def execute(self, context, payload: ChatPayload, on_handoff) -> ChatResult:
        return await chat_with_expert(
            expert=context.expert,
            knowledge=context.knowledge,
            message=payload.message,
            history=payload.history,
            peers=context.peers,
            on_handoff=on_handoff,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
        )


class LLMCollaborationHandler(_LLMHandler):
    """Solve a problem together with a colleague (named, or chosen by the model)."""

    async def execute(self, context, payload: CollaborationPayload, on_handoff) -> ChatResult:
        return await chat_with_expert(
            expert=context.expert,
            knowledge=context.knowledge,
            message=payload.problem,
            history=[],
            peers=context.peers,
            on_handoff=on_handoff,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            forced_peer_hint=payload.peer_hint,
        )


class LLMImproveHandler(_LLMHandler):
    async def execute(self, context, payload: ImprovePayload, on_handoff) -> KnowledgeResult:
        return await self_improve_expert(
            expert=context.expert,
            knowledge=context.knowledge,
            context=payload.context,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
        )


class LLMTrainHandler(_LLMHandler):
    async def execute(self, context, payload: TrainPayload, on_handoff) -> KnowledgeResult:
        return await train_expert(
            expert=context.expert,
            knowledge=context.knowledge,
            data=payload.data,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
        )


class LLMResearchHandler(_LLMHandler):
    async def execute(self, context, payload: ResearchPayload, on_handoff) -> KnowledgeResult:
        return await research_topic(
            expert=context.expert,
            knowledge=context.knowledge,
            topic=payload.topic,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
        )


def build_llm_handlers(llm_provider: str, llm_model: str) -> HandlerMap:
    """Return LLM-backed handlers for every task kind."""

    settings = {"llm_provider": llm_provider, "llm_model": llm_model}
    return {
        TaskKind.CHAT: LLMChatHandler(**settings),
        TaskKind.COLLABORATION: LLMCollaborationHandler(**settings),
        TaskKind.IMPROVE: LLMImproveHandler(**settings),
        TaskKind.TRAIN: LLMTrainHandler(**settings),
        TaskKind.RESEARCH: LLMResearchHandler(**settings),
    }


# ============================================================================
# Deterministic handlers
# ============================================================================


class RuleBasedHandler:
    """Deterministic handler with no LLM calls.

    Implement ``execute`` using pure Python logic.
    """

    def uses_llm(self) -> bool:
        return False

    async def execute(self, context, payload, on_handoff) -> HandlerResult:
        raise NotImplementedError("RuleBasedHandler requires a concrete implementation")


_MENTION = re.compile(r"@([\w][\w \-]*?)(?=[:?.,!]|$)")


class EchoChatHandler(RuleBasedHandler):
    """Answers by quoting the expert's knowledge.

    A message containing ``@Peer Name:`` consults that colleague, which makes
    the handoff protocol easy to drive from demos and tests.
    """

    async def execute(self, context, payload, on_handoff) -> ChatResult:
        message = payload.problem if isinstance(payload, CollaborationPayload) else payload.message
        hint = payload.peer_hint if isinstance(payload, CollaborationPayload) else None
        if hint is None:
            match = _MENTION.search(message)
            hint = match.group(1).strip() if match else None

        lines = [f"{context.expert.name} (v{context.knowledge.version}) on: {message}"]
        collaboration = None
        if hint:
            peer = on_handoff(hint, message)
            if peer is not None:
                collaboration = CollaborationRecord(
                    with_expert_id=peer.expert.id,
                    with_expert_name=peer.expert.name,
                    reason=message,
                )
                lines.append(f"Consulted {peer.expert.name} (v{peer.knowledge.version}).")
        first_line = context.knowledge.content.strip().splitlines()[:1]
        if first_line:
            lines.append(f"My model starts with: {first_line[0]}")
        return ChatResult(text="\n".join(lines), collaboration=collaboration)


class AppendNoteHandler(RuleBasedHandler):
    """Appends the payload text to a ``notes:`` list at the end of the model."""

    def __init__(self, label: str) -> None:
        self.label = label

    async def execute(self, context, payload, on_handoff) -> KnowledgeResult:
        text = _payload_text(payload)
        content = context.knowledge.content.rstrip("\n")
        if "\nnotes:" not in f"\n{content}":
            content = f"{content}\nnotes:" if content else "notes:"
        first_line = text.strip().splitlines()[0] if text.strip() else ""
        content = f"{content}\n  - {self.label}: {first_line}"
        return KnowledgeResult(new_expertise=content, summary=f"{self.label}: {first_line[:60]}")


class CallableHandler(RuleBasedHandler):
    """Wrap a plain async function as a handler (handy for tests)."""

    def __init__(self, fn: Callable[..., object], *, llm: bool = False) -> None:
        self._fn = fn
        self._llm = llm

    def uses_llm(self) -> bool:
        return self._llm

    async def execute(self, context, payload, on_handoff):
        return await self._fn(context, payload, on_handoff)


def _payload_text(payload: TaskPayload) -> str:
    if isinstance(payload, ImprovePayload):
        return payload.context
    if isinstance(payload, TrainPayload):
        return payload.data
    if isinstance(payload, ResearchPayload):
        return payload.topic
    if isinstance(payload, CollaborationPayload):
        return payload.problem
    return payload.message


def build_rule_based_handlers() -> HandlerMap:
    """Return deterministic handlers for offline demos and tests."""

    return {
        TaskKind.CHAT: EchoChatHandler(),
        TaskKind.COLLABORATION: EchoChatHandler(),
        TaskKind.IMPROVE: AppendNoteHandler("observed"),
        TaskKind.TRAIN: AppendNoteHandler("ingested"),
        TaskKind.RESEARCH: AppendNoteHandler("researched"),
    }


def handler_uses_llm(handler: Optional[TaskHandler]) -> bool:
    if handler is None or not hasattr(handler, "uses_llm"):
        return False
    return bool(handler.uses_llm())
