"""Scheduler behaviour: ordering, single flight, status lifecycle, handoffs."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from expertverse.collaboration import CollaborationCoordinator
from expertverse.errors import InvalidTarget, UnknownTaskKind
from expertverse.handlers import CallableHandler
from expertverse.registry import AgentRegistry
from expertverse.scheduler import TaskScheduler
from expertverse.schemas import (
    ChatPayload,
    ChatResult,
    CollaborationRecord,
    Expert,
    ExpertStatus,
    ExpertType,
    ImprovePayload,
    KnowledgeResult,
    TaskKind,
    TaskPriority,
    TaskStatus,
    TrainPayload,
)


def make_registry() -> AgentRegistry:
    registry = AgentRegistry()
    registry.register(Expert(id="db", name="Database Expert", type=ExpertType.DATABASE), "schema: {}")
    registry.register(Expert(id="api", name="API Expert", type=ExpertType.API), "endpoints: {}")
    return registry


def recording_handlers(log: list):
    async def chat(context, payload, on_handoff):
        log.append(payload.message)
        return ChatResult(text=f"answer to {payload.message}")

    async def learn(context, payload, on_handoff):
        text = payload.context if isinstance(payload, ImprovePayload) else payload.data
        log.append(text)
        return KnowledgeResult(new_expertise=f"{context.knowledge.content}\n# {text}", summary=text)

    return {
        TaskKind.CHAT: CallableHandler(chat),
        TaskKind.IMPROVE: CallableHandler(learn),
        TaskKind.TRAIN: CallableHandler(learn),
    }


def make_scheduler(handlers, registry=None, **kwargs) -> TaskScheduler:
    return TaskScheduler(registry or make_registry(), handlers, poll_interval=0.01, **kwargs)


@pytest.mark.asyncio
async def test_dispatches_by_priority_then_submission_order():
    log: list[str] = []
    scheduler = make_scheduler(recording_handlers(log))

    scheduler.submit(TaskKind.CHAT, TaskPriority.LOW, "db", ChatPayload(message="low"))
    scheduler.submit(TaskKind.CHAT, TaskPriority.MEDIUM, "db", ChatPayload(message="medium-1"))
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "api", ChatPayload(message="critical"))
    scheduler.submit(TaskKind.CHAT, TaskPriority.MEDIUM, "api", ChatPayload(message="medium-2"))
    scheduler.submit(TaskKind.CHAT, TaskPriority.HIGH, "db", ChatPayload(message="high"))

    expected = ["critical", "high", "medium-1", "medium-2", "low"]
    assert [task.payload.message for task in scheduler.pending_tasks()] == expected

    processed = await scheduler.drain()

    assert processed == 5
    assert log == expected
    assert scheduler.pending_tasks() == []


@pytest.mark.asyncio
async def test_critical_chat_jumps_ahead_of_background_improvement():
    log: list[str] = []
    scheduler = make_scheduler(recording_handlers(log))

    scheduler.submit(TaskKind.IMPROVE, TaskPriority.LOW, "db", ImprovePayload(context="slow query"))
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="urgent"))

    first = await scheduler.tick()

    assert first.kind == TaskKind.CHAT
    assert log == ["urgent"]
    assert [task.kind for task in scheduler.pending_tasks()] == [TaskKind.IMPROVE]


def test_submit_unknown_target_is_rejected():
    scheduler = make_scheduler(recording_handlers([]))

    with pytest.raises(InvalidTarget):
        scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "ghost", ChatPayload(message="hi"))
    assert scheduler.pending_tasks() == []


def test_submit_without_handler_is_rejected():
    scheduler = make_scheduler(recording_handlers([]))

    with pytest.raises(UnknownTaskKind):
        scheduler.submit(TaskKind.RESEARCH, TaskPriority.HIGH, "db", {"topic": "sharding"})


def test_submit_accepts_dict_payload_and_marks_queued():
    scheduler = make_scheduler(recording_handlers([]))

    scheduler.submit(TaskKind.TRAIN, TaskPriority.HIGH, "db", {"data": "CREATE TABLE t (id int);"})

    [task] = scheduler.pending_tasks()
    assert isinstance(task.payload, TrainPayload)
    assert scheduler.registry.get("db").status == ExpertStatus.QUEUED


@pytest.mark.asyncio
async def test_single_flight_while_a_task_is_processing():
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_chat(context, payload, on_handoff):
        started.set()
        await release.wait()
        return ChatResult(text="done")

    scheduler = make_scheduler({TaskKind.CHAT: CallableHandler(slow_chat)})
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="one"))
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "api", ChatPayload(message="two"))

    in_flight = asyncio.create_task(scheduler.tick())
    await started.wait()

    assert scheduler.current_task().status == TaskStatus.PROCESSING
    assert scheduler.registry.get("db").status == ExpertStatus.THINKING
    assert await scheduler.tick() is None
    assert len(scheduler.pending_tasks()) == 1

    release.set()
    finished = await in_flight

    assert finished.status == TaskStatus.COMPLETED
    assert scheduler.current_task() is None


@pytest.mark.asyncio
async def test_knowledge_update_applied_with_backup_reason():
    events = []
    scheduler = make_scheduler(recording_handlers([]), listeners=[events.append])

    scheduler.submit(TaskKind.TRAIN, TaskPriority.HIGH, "db", TrainPayload(data="users(id)"))
    await scheduler.drain()

    knowledge = scheduler.registry.knowledge_of("db")
    assert knowledge.version == 2
    assert knowledge.content.endswith("# users(id)")
    [backup] = scheduler.registry.knowledge.history("db")
    assert backup.reason == "Pre-training backup"
    expert = scheduler.registry.get("db")
    assert expert.version == 2
    assert expert.learnings == 1
    assert expert.status == ExpertStatus.ACTIVE
    assert [event.kind for event in events] == ["queued", "started", "completed"]
    assert events[-1].version == 2


@pytest.mark.asyncio
async def test_failure_is_recorded_and_expert_goes_idle():
    async def broken(context, payload, on_handoff):
        raise RuntimeError("provider unavailable")

    events = []
    scheduler = make_scheduler({TaskKind.CHAT: CallableHandler(broken)}, listeners=[events.append])
    task_id = scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="hi"))

    result = await scheduler.tick()

    assert result.status == TaskStatus.FAILED
    assert "provider unavailable" in result.error
    [failed] = scheduler.failed_tasks()
    assert failed.id == task_id
    assert scheduler.pending_tasks() == []
    assert scheduler.registry.get("db").status == ExpertStatus.IDLE
    assert events[-1].kind == "failed"
    assert scheduler.registry.knowledge_of("db").version == 1


@pytest.mark.asyncio
async def test_wrong_result_type_fails_the_task():
    async def chatty_improver(context, payload, on_handoff):
        return ChatResult(text="not knowledge")

    scheduler = make_scheduler({TaskKind.IMPROVE: CallableHandler(chatty_improver)})
    scheduler.submit(TaskKind.IMPROVE, TaskPriority.LOW, "db", ImprovePayload(context="x"))

    result = await scheduler.tick()

    assert result.status == TaskStatus.FAILED
    assert "KnowledgeResult" in result.error


@pytest.mark.asyncio
async def test_handoff_pairs_experts_and_reply_carries_collaboration():
    seen_statuses = {}

    async def consult(context, payload, on_handoff):
        peer = on_handoff("API Expert", "auth flow?")
        seen_statuses["db"] = scheduler.registry.get("db").status
        seen_statuses["api"] = scheduler.registry.get("api").status
        return ChatResult(
            text=f"combined with v{peer.knowledge.version}",
            collaboration=CollaborationRecord(
                with_expert_id=peer.expert.id, with_expert_name=peer.expert.name, reason="auth flow?"
            ),
        )

    events = []
    scheduler = make_scheduler({TaskKind.CHAT: CallableHandler(consult)}, listeners=[events.append])
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="login?"))

    await scheduler.tick()

    assert seen_statuses == {"db": ExpertStatus.COLLABORATING, "api": ExpertStatus.COLLABORATING}
    kinds = [event.kind for event in events]
    assert kinds == ["queued", "started", "handoff", "reply", "completed"]
    assert events[2].peer.id == "api"
    assert events[3].result.collaboration.with_expert_name == "API Expert"
    assert scheduler.registry.get("db").status == ExpertStatus.ACTIVE
    assert scheduler.registry.get("api").status == ExpertStatus.ACTIVE
    assert scheduler.coordinator.open_handoffs() == []


@pytest.mark.asyncio
async def test_failure_mid_handoff_releases_both_experts():
    async def consult_then_crash(context, payload, on_handoff):
        assert on_handoff("api expert", "auth flow?") is not None
        raise TimeoutError("LLM call timed out")

    registry = make_registry()
    coordinator = CollaborationCoordinator(registry)
    scheduler = TaskScheduler(
        registry,
        {TaskKind.CHAT: CallableHandler(consult_then_crash)},
        coordinator=coordinator,
    )
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="login?"))

    result = await scheduler.tick()

    assert result.status == TaskStatus.FAILED
    db = registry.get("db")
    api = registry.get("api")
    assert db.status == ExpertStatus.IDLE
    assert api.status == ExpertStatus.ACTIVE
    assert db.collaboration is None and api.collaboration is None
    assert coordinator.open_handoffs() == []


@pytest.mark.asyncio
async def test_unmatched_handoff_continues_solo():
    async def consult_nobody(context, payload, on_handoff):
        assert on_handoff("Quantum Physicist", "?") is None
        return ChatResult(text="solo")

    scheduler = make_scheduler({TaskKind.CHAT: CallableHandler(consult_nobody)})
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="q"))

    result = await scheduler.tick()

    assert result.status == TaskStatus.COMPLETED
    assert scheduler.registry.get("api").status == ExpertStatus.IDLE


@pytest.mark.asyncio
async def test_work_submitted_to_peer_during_handoff_leaves_it_queued():
    async def consult_while_user_asks_peer(context, payload, on_handoff):
        assert on_handoff("API Expert", "auth flow?") is not None
        scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "api", ChatPayload(message="rate limits?"))
        assert scheduler.registry.get("api").status == ExpertStatus.COLLABORATING
        return ChatResult(text="combined")

    scheduler = make_scheduler({TaskKind.CHAT: CallableHandler(consult_while_user_asks_peer)})
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="login?"))

    await scheduler.tick()

    assert scheduler.registry.get("api").status == ExpertStatus.QUEUED
    assert scheduler.registry.get("api").collaboration is None
    assert scheduler.has_pending_for("api")
    assert scheduler.registry.get("db").status == ExpertStatus.ACTIVE


@pytest.mark.asyncio
async def test_handler_capability_error_fails_the_task():
    class BrokenCapability(CallableHandler):
        def uses_llm(self) -> bool:
            raise RuntimeError("capability lookup failed")

    async def never_runs(context, payload, on_handoff):
        pytest.fail("handler should not execute")

    scheduler = make_scheduler({TaskKind.CHAT: BrokenCapability(never_runs)})
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="q"))

    result = await scheduler.tick()

    assert result.status == TaskStatus.FAILED
    assert result.error == "RuntimeError: capability lookup failed"
    assert scheduler.registry.get("db").status == ExpertStatus.IDLE


@pytest.mark.asyncio
async def test_resubmit_and_dismiss_failed_tasks():
    attempts = []

    async def flaky(context, payload, on_handoff):
        attempts.append(payload.message)
        if len(attempts) == 1:
            raise RuntimeError("first try fails")
        return ChatResult(text="ok")

    scheduler = make_scheduler({TaskKind.CHAT: CallableHandler(flaky)})
    failed_id = scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="q"))
    await scheduler.tick()

    new_id = scheduler.resubmit(failed_id)

    assert new_id != failed_id
    assert scheduler.failed_tasks() == []
    result = await scheduler.tick()
    assert result.status == TaskStatus.COMPLETED
    assert attempts == ["q", "q"]

    with pytest.raises(KeyError):
        scheduler.resubmit(new_id)

    other = scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="q"))
    scheduler.dismiss_failed(other)  # still pending: ignored
    assert [task.id for task in scheduler.pending_tasks()] == [other]


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_the_loop():
    def broken_listener(event):
        raise RuntimeError("listener bug")

    scheduler = make_scheduler(recording_handlers([]), listeners=[broken_listener])
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="q"))

    result = await scheduler.tick()

    assert result.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_priority_aging_promotes_waiting_tasks():
    now = [datetime(2025, 1, 1, tzinfo=timezone.utc)]
    log: list[str] = []
    scheduler = make_scheduler(recording_handlers(log), aging_interval=10, clock=lambda: now[0])

    scheduler.submit(TaskKind.CHAT, TaskPriority.LOW, "db", ChatPayload(message="old low"))
    now[0] += timedelta(seconds=25)
    scheduler.submit(TaskKind.CHAT, TaskPriority.MEDIUM, "api", ChatPayload(message="fresh medium"))

    await scheduler.drain()

    assert log == ["old low", "fresh medium"]


@pytest.mark.asyncio
async def test_strict_priority_without_aging():
    now = [datetime(2025, 1, 1, tzinfo=timezone.utc)]
    log: list[str] = []
    scheduler = make_scheduler(recording_handlers(log), aging_interval=0, clock=lambda: now[0])

    scheduler.submit(TaskKind.CHAT, TaskPriority.LOW, "db", ChatPayload(message="old low"))
    now[0] += timedelta(hours=1)
    scheduler.submit(TaskKind.CHAT, TaskPriority.MEDIUM, "api", ChatPayload(message="fresh medium"))

    await scheduler.drain()

    assert log == ["fresh medium", "old low"]


@pytest.mark.asyncio
async def test_run_loop_processes_until_stopped():
    log: list[str] = []
    scheduler = make_scheduler(recording_handlers(log))
    scheduler.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="background"))

    scheduler.start()
    for _ in range(100):
        if log:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert log == ["background"]
    assert not scheduler.is_running


@pytest.mark.asyncio
async def test_log_tags_follow_handler_kind(capsys, monkeypatch):
    monkeypatch.delenv("EXPERTVERSE_QUIET", raising=False)
    monkeypatch.setenv("EXPERTVERSE_NO_COLOR", "1")

    async def chat(context, payload, on_handoff):
        return ChatResult(text="ok")

    deterministic = make_scheduler({TaskKind.CHAT: CallableHandler(chat)})
    deterministic.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="q"))
    await deterministic.tick()
    out = capsys.readouterr().out
    assert "[•] [Database Expert] CHAT" in out
    assert "[AI]" not in out

    llm_backed = make_scheduler({TaskKind.CHAT: CallableHandler(chat, llm=True)})
    llm_backed.submit(TaskKind.CHAT, TaskPriority.CRITICAL, "db", ChatPayload(message="q"))
    await llm_backed.tick()
    assert "[AI] [Database Expert] CHAT" in capsys.readouterr().out
