"""
LLM call functions for expert work, using Mirascope via call_llm_with_retries.

This module provides:
- Expert chat with an optional consult-a-colleague second pass (chat_with_expert)
- Knowledge refinement from an observation (self_improve_expert)
- Knowledge ingestion from raw material (train_expert)
- Topic research folded into the mental model (research_topic)
- Meta content generation (generate_meta_content)
- Moderated War Room debate turns (war_room_turn)

All functions are stateless and accept prompts/config as parameters. The
handoff callback passed to the chat helpers is the only way they touch
shared state.
"""

from __future__ import annotations

from typing import Callable, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from .llm_utils import call_llm_with_retries
from .schemas import (
    MODERATOR_ID,
    ChatMessage,
    ChatResult,
    CollaborationRecord,
    Expert,
    KnowledgeArtifact,
    KnowledgeResult,
    PeerKnowledge,
    SearchSource,
    WarRoomMessage,
)

HandoffCallback = Callable[[str, str], Optional[PeerKnowledge]]
MetaKind = Literal["prompt", "agent", "skill"]


# ============================================================================
# Response models
# ============================================================================


class ChatDecision(BaseModel):
    """First-pass chat output: an answer, or a request to consult a colleague."""

    answer: str = Field("", description="Answer to the user if no consultation is needed")
    consult_expert: Optional[str] = Field(
        None, description="Name of the colleague to consult, or null"
    )
    consult_reason: Optional[str] = Field(
        None, description="Concise question for that colleague"
    )
    sources: List[SearchSource] = Field(default_factory=list)


class ChatAnswer(BaseModel):
    answer: str
    sources: List[SearchSource] = Field(default_factory=list)


class KnowledgeUpdate(BaseModel):
    new_expertise: str = Field(..., description="The full updated YAML mental model")
    summary: str = Field(..., description="One sentence describing what was learned")
    sources: List[SearchSource] = Field(default_factory=list)


class MetaContent(BaseModel):
    content: str


class WarRoomTurn(BaseModel):
    """Next War Room turn chosen by the moderator."""

    speaker_id: str = Field(..., description=f"Id of the expert speaking, or '{MODERATOR_ID}'")
    speaker_name: str = Field(..., description="Name of the expert, or 'Moderator'")
    content: str = Field(..., description="The message, in first person as the speaker")
    is_consensus: bool = Field(
        False, description="True only when the moderator gives the final solution"
    )


# ============================================================================
# Prompt builders
# ============================================================================


def _peers_context(peers: Sequence[Expert]) -> str:
    if not peers:
        return "  (no colleagues available)"
    return "\n".join(f"  - {peer.name} ({peer.type.value}): {peer.description}" for peer in peers)


def _expert_system_prompt(expert: Expert, knowledge: KnowledgeArtifact, peers: Sequence[Expert]) -> str:
    return f"""
You are an AI expert agent specialised in {expert.type.value}. Your name is {expert.name}.

Your current mental model (knowledge base, YAML, v{knowledge.version}):
---
{knowledge.content}
---

Colleagues you may consult:
{_peers_context(peers)}

Rules:
1. Answer primarily from your own mental model.
2. If the question needs knowledge outside your domain that matches a colleague's
   description, set consult_expert to that colleague's exact name and
   consult_reason to a specific question for them, and leave answer empty.
3. List any external documentation you relied on in sources.
4. Be concise and professional.
"""


def _transcript(history: Sequence[ChatMessage], message: str) -> str:
    lines = [f"{turn.role}: {turn.text}" for turn in history]
    lines.append(f"user: {message}")
    return "Conversation so far:\n" + "\n".join(lines)


# ============================================================================
# LLM Call Functions
# ============================================================================


async def chat_with_expert(
    *,
    expert: Expert,
    knowledge: KnowledgeArtifact,
    message: str,
    history: Sequence[ChatMessage],
    peers: Sequence[Expert],
    on_handoff: HandoffCallback,
    llm_provider: str,
    llm_model: str,
    forced_peer_hint: Optional[str] = None,
) -> ChatResult:
    """Answer a user message, consulting a colleague when the model asks to.

    Pass 1 asks the model for an answer or a consultation request. When it
    names a colleague, ``on_handoff`` resolves the name; a match triggers
    pass 2 with the colleague's mental model in the prompt. An unmatched name
    falls back to the first-pass answer (or a solo retry if it was empty).

    ``forced_peer_hint`` skips the decision and consults that colleague
    directly (used by COLLABORATION tasks).
    """

    system_prompt = _expert_system_prompt(expert, knowledge, peers)
    conversation = _transcript(history, message)

    if forced_peer_hint:
        decision = ChatDecision(consult_expert=forced_peer_hint, consult_reason=message)
    else:
        decision = await call_llm_with_retries(
            system_prompt=system_prompt,
            user_prompt=f"{conversation}\n\nOutput JSON matching the ChatDecision schema.",
            llm_provider=llm_provider,
            llm_model=llm_model,
            response_model=ChatDecision,
        )

    if decision.consult_expert and peers:
        reason = decision.consult_reason or message
        peer = on_handoff(decision.consult_expert, reason)
        if peer is not None:
            collaboration_prompt = f"""
{conversation}

[SYSTEM]: You consulted {peer.expert.name}.
Reason: {reason}

{peer.expert.name}'s mental model (YAML, v{peer.knowledge.version}):
```yaml
{peer.knowledge.content}
```

Combine this shared knowledge with your own and give the user a complete answer.
Output JSON matching the ChatAnswer schema.
"""
            answer = await call_llm_with_retries(
                system_prompt=system_prompt,
                user_prompt=collaboration_prompt,
                llm_provider=llm_provider,
                llm_model=llm_model,
                response_model=ChatAnswer,
            )
            return ChatResult(
                text=answer.answer or "Collaboration completed but no answer was generated.",
                collaboration=CollaborationRecord(
                    with_expert_id=peer.expert.id,
                    with_expert_name=peer.expert.name,
                    reason=reason,
                ),
                sources=answer.sources,
            )

    if decision.answer:
        return ChatResult(text=decision.answer, sources=decision.sources)

    solo = await call_llm_with_retries(
        system_prompt=system_prompt,
        user_prompt=(
            f"{conversation}\n\nNo colleague is available. Answer from your own mental model.\n"
            "Output JSON matching the ChatAnswer schema."
        ),
        llm_provider=llm_provider,
        llm_model=llm_model,
        response_model=ChatAnswer,
    )
    return ChatResult(text=solo.answer or "I couldn't process that request.", sources=solo.sources)


async def self_improve_expert(
    *,
    expert: Expert,
    knowledge: KnowledgeArtifact,
    context: str,
    llm_provider: str,
    llm_model: str,
) -> KnowledgeResult:
    """Refine an expert's mental model from a recent observation."""

    system_prompt = "You are the meta-agent responsible for upgrading other agents."
    user_prompt = f"""
Target agent: {expert.name} ({expert.type.value})
Current mental model (YAML):
```yaml
{knowledge.content}
```

The agent just observed:
"{context}"

Task:
1. Decide whether the observation teaches the agent something new.
2. Update the YAML mental model with new insights, refined definitions or new keys.
3. Keep the YAML valid.
4. new_expertise must be the full updated YAML; summary one sentence on what was learned.

If nothing new was learned, return the original YAML with the summary "No significant changes."
Output JSON matching the KnowledgeUpdate schema.
"""
    update = await call_llm_with_retries(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        llm_provider=llm_provider,
        llm_model=llm_model,
        response_model=KnowledgeUpdate,
    )
    return KnowledgeResult(new_expertise=update.new_expertise, summary=update.summary, sources=update.sources)


async def train_expert(
    *,
    expert: Expert,
    knowledge: KnowledgeArtifact,
    data: str,
    llm_provider: str,
    llm_model: str,
) -> KnowledgeResult:
    """Merge raw training material (code, SQL, JSON, prose) into the mental model."""

    system_prompt = "You are a knowledge ingestion system."
    user_prompt = f"""
Target agent: {expert.name} ({expert.type.value})
Current mental model (YAML):
```yaml
{knowledge.content}
```

New raw training data:
```
{data}
```

Task:
1. Extract the structure, rules, schemas or logic relevant to this agent's domain.
2. Merge it into the existing YAML. Only overwrite existing knowledge on conflict.
3. Keep the YAML valid.
4. summary: a very brief note of what was ingested (e.g. "Ingested User schema").

Output JSON matching the KnowledgeUpdate schema.
"""
    update = await call_llm_with_retries(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        llm_provider=llm_provider,
        llm_model=llm_model,
        response_model=KnowledgeUpdate,
    )
    return KnowledgeResult(new_expertise=update.new_expertise, summary=update.summary, sources=update.sources)


async def research_topic(
    *,
    expert: Expert,
    knowledge: KnowledgeArtifact,
    topic: str,
    llm_provider: str,
    llm_model: str,
) -> KnowledgeResult:
    """Research a topic and fold the findings into the mental model."""

    system_prompt = (
        f"You are a research assistant for the {expert.type.value} expert {expert.name}. "
        "Prefer official documentation and cite what you used."
    )
    user_prompt = f"""
Research mission: {topic}

Current mental model (YAML):
```yaml
{knowledge.content}
```

Task:
1. Gather the current best practices, versions and pitfalls for the topic.
2. Add a section for the topic to the YAML, keeping existing knowledge intact.
3. List the documents you relied on in sources (title and uri).
4. summary: one sentence on what the research added.

Output JSON matching the KnowledgeUpdate schema.
"""
    update = await call_llm_with_retries(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        llm_provider=llm_provider,
        llm_model=llm_model,
        response_model=KnowledgeUpdate,
    )
    return KnowledgeResult(new_expertise=update.new_expertise, summary=update.summary, sources=update.sources)


_META_PROMPTS = {
    "prompt": (
        "You are an expert prompt engineer who writes structured, effective system prompts.",
        "Create a robust system prompt template for an AI agent that must accomplish:\n\n"
        '"{input}"\n\nInclude sections for Role, Context, Rules and Output Format.',
    ),
    "agent": (
        "You are an AI architect who designs autonomous agent specifications.",
        "Define a complete agent specification in YAML for an agent described as:\n\n"
        '"{input}"\n\nInclude name, role, description, mental_model and capabilities.',
    ),
    "skill": (
        "You are a senior software engineer who writes clean, reusable functions.",
        "Write a self-contained Python function (a skill) that performs:\n\n"
        '"{input}"\n\nInclude a docstring and error handling.',
    ),
}


async def generate_meta_content(
    *,
    kind: MetaKind,
    request: str,
    llm_provider: str,
    llm_model: str,
) -> str:
    """Generate a prompt template, agent spec or skill from a short description."""

    system_prompt, template = _META_PROMPTS[kind]
    result = await call_llm_with_retries(
        system_prompt=system_prompt,
        user_prompt=template.format(input=request) + "\n\nOutput JSON matching the MetaContent schema.",
        llm_provider=llm_provider,
        llm_model=llm_model,
        response_model=MetaContent,
    )
    return result.content


def _war_room_participants(participants: Sequence[PeerKnowledge]) -> str:
    blocks = []
    for participant in participants:
        expert = participant.expert
        preview = participant.knowledge.content[:300]
        blocks.append(
            f"  ID: {expert.id}\n"
            f"  Name: {expert.name}\n"
            f"  Type: {expert.type.value}\n"
            f"  Mental model summary: {expert.description}\n"
            f"  Expertise preview: {preview}... (truncated)"
        )
    return "\n  ---\n".join(blocks)


async def war_room_turn(
    *,
    problem: str,
    history: Sequence[WarRoomMessage],
    participants: Sequence[PeerKnowledge],
    llm_provider: str,
    llm_model: str,
) -> WarRoomTurn:
    """Generate the next turn of a moderated debate between experts.

    The model plays the moderator: it picks who speaks next (speaking as that
    expert) or, once a solution is clear, summarises the consensus itself.
    """

    system_prompt = f"""
You are the Moderator of an AI Expert War Room.
Your goal is to orchestrate a debate that solves the user's problem.

Participants (experts):
{_war_room_participants(participants)}

User problem: "{problem}"

Rules:
1. Decide who should speak next based on the transcript.
2. If an expert needs to provide technical details, speak AS that expert.
3. Once the experts have debated enough and a solution is clear, speak as the
   Moderator (speaker_id "{MODERATOR_ID}") to summarise the consensus and set
   is_consensus to true.
4. Keep turns concise (under 50 words unless providing code or a schema).
5. Encourage correction when an expert is wrong.
6. Do not let the same speaker talk twice in a row unless clarifying.
"""
    transcript = "\n".join(f"{turn.speaker_name} ({turn.role}): {turn.content}" for turn in history)
    user_prompt = (
        f"Current transcript:\n{transcript or '(the debate has not started)'}\n\n"
        "Task: generate the next turn.\nOutput JSON matching the WarRoomTurn schema."
    )
    return await call_llm_with_retries(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        llm_provider=llm_provider,
        llm_model=llm_model,
        response_model=WarRoomTurn,
    )
