"""End-to-end tests of the ExpertSystem facade with deterministic handlers."""

from unittest.mock import AsyncMock

import pytest

from expertverse.errors import InvalidTarget, VersionNotFound
from expertverse.handlers import LLMChatHandler
from expertverse.llm_calls import WarRoomTurn
from expertverse.persistence import InMemoryPersistence
from expertverse.schemas import ExpertStatus, ExpertType, HistoryEntry, TaskKind, TaskPriority
from expertverse.system import SELF_IMPROVE_TOPICS, ExpertSystem


def make_system(**kwargs) -> ExpertSystem:
    system = ExpertSystem(**kwargs)
    system.seed()
    return system


def test_seed_loads_default_team():
    system = make_system()

    agents = system.list_agents()
    assert [agent.name for agent in agents] == [
        "Database Expert",
        "API Expert",
        "Backend Expert",
        "WebSocket Expert",
        "Frontend Expert",
    ]
    assert system.get_agent("4").version == 4
    assert system.knowledge_of("4").version == 4


@pytest.mark.asyncio
async def test_chat_consults_misspelled_colleague():
    system = make_system()

    task_id = system.chat("2", "@Datbase Expert: which index keeps user lookups fast?")
    assert system.get_agent("2").status == ExpertStatus.QUEUED
    await system.drain()

    reply = system.reply_for(task_id)
    assert reply.collaboration.with_expert_name == "Database Expert"
    assert [turn.role for turn in system.transcript("2")] == ["user", "system", "model"]
    assert system.get_agent("2").status == ExpertStatus.ACTIVE
    assert system.get_agent("1").status == ExpertStatus.ACTIVE
    assert system.get_agent("1").collaboration is None
    actions = [entry.action for entry in system.activity.entries()]
    assert "Collaboration" in actions and "Queried" in actions
    assert system.stats().collaborations == 1


@pytest.mark.asyncio
async def test_chat_history_is_passed_to_the_next_question():
    system = make_system()
    system.chat("1", "first question")
    await system.drain()

    second = system.chat("1", "follow-up")

    [task] = system.get_pending_tasks()
    assert task.id == second
    assert [turn.text for turn in task.payload.history][0] == "first question"
    assert len(task.payload.history) == 2


@pytest.mark.asyncio
async def test_replies_are_bounded_oldest_first():
    system = make_system(reply_limit=2)
    task_ids = [system.chat("3", f"question {n}") for n in range(3)]

    await system.drain()

    assert system.reply_for(task_ids[0]) is None
    assert system.reply_for(task_ids[1]) is not None
    assert "question 2" in system.reply_for(task_ids[2]).text
    assert len(system.transcript("3")) == 6


@pytest.mark.asyncio
async def test_self_improve_uses_type_observation_and_versions_knowledge():
    system = make_system()

    system.self_improve("1")
    [task] = system.get_pending_tasks()
    assert task.priority == TaskPriority.LOW
    assert task.payload.context == SELF_IMPROVE_TOPICS[ExpertType.DATABASE]

    await system.drain()

    expert = system.get_agent("1")
    assert expert.version == 2
    assert expert.learnings == 4
    assert "Observed slow query" in system.knowledge_of("1").content
    assert system.history_of("1")[0].reason == "Pre-improvement backup"


@pytest.mark.asyncio
async def test_convenience_operations_use_their_priority_bands():
    system = make_system()

    system.self_improve("5")
    system.collaborate("5", "Shard the posts table", peer_hint="Database Expert")
    system.research("5", "Kafka consumer groups")
    system.train("5", "workers:\n  - thumbnailer")
    system.chat("5", "status?")

    pending = system.get_pending_tasks()
    assert [task.priority for task in pending] == [
        TaskPriority.CRITICAL,
        TaskPriority.HIGH,
        TaskPriority.HIGH,
        TaskPriority.MEDIUM,
        TaskPriority.LOW,
    ]
    assert [task.kind for task in pending][1:3] == [TaskKind.RESEARCH, TaskKind.TRAIN]

    await system.drain()

    assert system.get_agent("5").version == 4
    assert system.get_failed_tasks() == []


@pytest.mark.asyncio
async def test_revert_creates_new_version_and_logs():
    system = make_system()
    original = system.knowledge_of("1").content
    system.train("1", "orders(id, user_id)")
    await system.drain()

    new_version = system.revert_agent_knowledge("1", 1)

    assert new_version == 3
    assert system.knowledge_of("1").content == original
    expert = system.get_agent("1")
    assert expert.version == 3
    assert expert.learnings == 4
    assert system.activity.entries()[0].action == "Reverted"
    with pytest.raises(VersionNotFound):
        system.revert_agent_knowledge("1", 3)


@pytest.mark.asyncio
async def test_view_diff_shows_added_note():
    system = make_system()
    system.train("3", "event: presence.update")
    await system.drain()

    diff = system.view_diff("3", 1)

    added = [line.content for line in diff if line.kind == "added"]
    assert any("presence.update" in line for line in added)
    assert all(line.kind != "removed" for line in diff)


def test_create_expert_logs_creation():
    system = ExpertSystem()

    expert = system.create_expert("Security Expert", "Security", "Threat models", "threats: []")

    assert expert.status == ExpertStatus.IDLE
    assert expert.version == 1
    assert system.activity.entries()[0].action == "Created"


def test_submit_task_to_unknown_agent_raises():
    system = make_system()

    with pytest.raises(InvalidTarget):
        system.chat("ghost", "hello?")
    with pytest.raises(InvalidTarget):
        system.submit_task(TaskKind.TRAIN, TaskPriority.HIGH, "ghost", {"data": "x"})


@pytest.mark.asyncio
async def test_save_and_load_state_round_trip():
    persistence = InMemoryPersistence()
    system = make_system(persistence=persistence)
    system.train("1", "orders(id)")
    await system.drain()
    await system.save_state()

    restored = ExpertSystem(persistence=persistence)
    assert await restored.load_state() is True

    assert [agent.id for agent in restored.list_agents()] == [agent.id for agent in system.list_agents()]
    assert restored.knowledge_of("1") == system.knowledge_of("1")
    assert restored.history_of("1") == system.history_of("1")
    assert len(restored.activity) == len(system.activity)
    assert restored.revert_agent_knowledge("1", 1) == 3


@pytest.mark.asyncio
async def test_load_state_without_saved_state():
    system = ExpertSystem()

    assert await system.load_state() is False
    assert system.list_agents() == []


@pytest.mark.asyncio
async def test_import_state_refused_while_work_is_queued():
    system = make_system()
    state = system.export_state()
    system.chat("1", "pending")

    with pytest.raises(RuntimeError):
        system.import_state(state)


def test_import_state_rejects_expert_without_knowledge_and_keeps_live_state():
    system = make_system()
    before = system.knowledge_of("1")
    bad = system.export_state()
    del bad.knowledge["1"]

    with pytest.raises(InvalidTarget):
        system.import_state(bad)

    assert len(system.list_agents()) == 5
    assert system.knowledge_of("1") == before
    assert system.knowledge_of("4").version == 4


def test_import_state_rejects_history_newer_than_current():
    system = make_system()
    bad = system.export_state()
    record = bad.knowledge["2"]
    record.history.append(HistoryEntry(version=record.current.version, content="stale", reason="bogus"))

    with pytest.raises(ValueError):
        system.import_state(bad)

    assert len(system.list_agents()) == 5
    assert system.history_of("2") == []
    assert system.knowledge_of("1").version == 1


@pytest.mark.asyncio
async def test_generate_meta_requires_llm_configuration(monkeypatch):
    with pytest.raises(ValueError):
        await ExpertSystem().generate_meta("prompt", "triage bugs")

    fake = AsyncMock(return_value="ROLE: triager")
    monkeypatch.setattr("expertverse.system.generate_meta_content", fake)
    system = ExpertSystem(llm_provider="openai", llm_model="gpt-5-nano")

    assert await system.generate_meta("prompt", "triage bugs") == "ROLE: triager"
    assert fake.await_args.kwargs["kind"] == "prompt"


def test_with_llm_wires_llm_handlers():
    system = ExpertSystem.with_llm("openai", "gpt-5-nano")

    assert isinstance(system.scheduler.handlers[TaskKind.CHAT], LLMChatHandler)
    assert system.llm_model == "gpt-5-nano"


def scripted_war_room(monkeypatch, turns):
    """Replace the War Room LLM call with canned turns (exceptions are raised)."""

    calls = []

    async def fake_war_room_turn(**kwargs):
        calls.append(kwargs)
        turn = turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn

    monkeypatch.setattr("expertverse.system.war_room_turn", fake_war_room_turn)
    return calls


def llm_system() -> ExpertSystem:
    system = ExpertSystem(llm_provider="openai", llm_model="gpt-5-nano")
    system.seed()
    return system


@pytest.mark.asyncio
async def test_war_room_runs_until_moderator_consensus(monkeypatch):
    calls = scripted_war_room(
        monkeypatch,
        [
            WarRoomTurn(speaker_id="2", speaker_name="API Expert", content="Login takes 2s."),
            WarRoomTurn(speaker_id="db", speaker_name="Datbase Expert", content="Index users.email."),
            WarRoomTurn(
                speaker_id="Moderator",
                speaker_name="Moderator",
                content="Consensus: add the email index.",
                is_consensus=True,
            ),
        ],
    )
    system = llm_system()

    session = await system.war_room("Login is slow", participant_ids=["2", "1"])

    assert session.outcome == "consensus"
    assert session.turns == 3
    assert [message.speaker_id for message in session.messages] == ["2", "1", "moderator"]
    assert [message.role for message in session.messages] == ["expert", "expert", "moderator"]
    assert session.messages[1].speaker_name == "Database Expert"
    assert session.consensus.content == "Consensus: add the email index."
    assert [len(call["history"]) for call in calls] == [0, 1, 2]
    assert [peer.expert.id for peer in calls[0]["participants"]] == ["2", "1"]
    assert calls[0]["problem"] == "Login is slow"
    assert system.get_pending_tasks() == []
    assert system.get_agent("1").version == 1


@pytest.mark.asyncio
async def test_war_room_stops_at_turn_limit(monkeypatch):
    scripted_war_room(
        monkeypatch,
        [WarRoomTurn(speaker_id="1", speaker_name="Database Expert", content=f"point {n}") for n in range(5)],
    )
    system = llm_system()

    session = await system.war_room("Shard posts?", max_turns=3)

    assert session.outcome == "turn_limit"
    assert session.turns == 3
    assert session.consensus is None
    assert len(session.participant_ids) == 5


@pytest.mark.asyncio
async def test_war_room_ends_cleanly_when_a_turn_fails(monkeypatch):
    scripted_war_room(
        monkeypatch,
        [
            WarRoomTurn(speaker_id="5", speaker_name="Backend Expert", content="Queue it."),
            TimeoutError("LLM call timed out"),
        ],
    )
    system = llm_system()

    session = await system.war_room("Thumbnail backlog")

    assert session.outcome == "error"
    assert session.error == "TimeoutError: LLM call timed out"
    assert session.turns == 2
    assert session.messages[-1].role == "moderator"
    assert session.messages[-1].content == "Communication link disrupted. Ending session."
    assert session.consensus is None


@pytest.mark.asyncio
async def test_war_room_validates_its_inputs(monkeypatch):
    scripted_war_room(monkeypatch, [])

    with pytest.raises(ValueError):
        await make_system().war_room("Login is slow")

    system = llm_system()
    with pytest.raises(ValueError):
        await system.war_room("   ")
    with pytest.raises(ValueError):
        await system.war_room("Login is slow", max_turns=0)
    with pytest.raises(InvalidTarget):
        await system.war_room("Login is slow", participant_ids=["1", "ghost"])
