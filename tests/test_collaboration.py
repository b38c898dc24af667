"""Tests for fuzzy peer resolution and the paired handoff protocol."""

import pytest

from expertverse.collaboration import CollaborationCoordinator, resolve_peer
from expertverse.errors import HandoffTargetNotFound
from expertverse.registry import AgentRegistry
from expertverse.schemas import Expert, ExpertStatus, ExpertType

TEAM = [
    Expert(id="1", name="Database Expert", type=ExpertType.DATABASE),
    Expert(id="2", name="API Expert", type=ExpertType.API),
    Expert(id="5", name="Backend Expert", type=ExpertType.BACKEND),
    Expert(id="4", name="Frontend Expert", type=ExpertType.FRONTEND),
]


def make_coordinator() -> CollaborationCoordinator:
    registry = AgentRegistry()
    for expert in TEAM:
        registry.register(expert, f"{expert.type.value.lower()}: {{}}")
    return CollaborationCoordinator(registry)


@pytest.mark.parametrize(
    "hint, expected",
    [
        ("Database Expert", "1"),
        ("database expert", "1"),
        ("Database", "1"),
        ("ask the API Expert team", "2"),
        ("Datbase Expert", "1"),
        ("Frontnd Expert", "4"),
    ],
)
def test_resolve_peer_matches_names(hint, expected):
    peer = resolve_peer(hint, TEAM, exclude_id="2" if expected != "2" else "1")

    assert peer is not None
    assert peer.id == expected


def test_resolve_peer_excludes_requester():
    assert resolve_peer("Database Expert", TEAM, exclude_id="1") is None


def test_resolve_peer_returns_none_for_unrelated_or_blank_hints():
    assert resolve_peer("Quantum Physicist", TEAM) is None
    assert resolve_peer("   ", TEAM) is None


def test_begin_handoff_without_match_is_a_no_op():
    coordinator = make_coordinator()
    coordinator.registry.mark_thinking("2")

    assert coordinator.begin_handoff("2", "Quantum Physicist", "entanglement?") is None
    assert coordinator.registry.get("2").status == ExpertStatus.THINKING
    assert coordinator.open_handoffs() == []


def test_begin_handoff_pairs_both_experts():
    coordinator = make_coordinator()
    coordinator.registry.mark_thinking("2")

    peer_id = coordinator.begin_handoff("2", "Datbase Expert", "Which index for users?")

    assert peer_id == "1"
    requester = coordinator.registry.get("2")
    peer = coordinator.registry.get("1")
    assert requester.status == peer.status == ExpertStatus.COLLABORATING
    assert requester.collaborating_with == "Database Expert"
    assert peer.collaborating_with == "API Expert"
    assert peer.collaboration_topic == "Which index for users?"
    assert coordinator.is_open("2", "1")


def test_end_handoff_restores_both_and_is_idempotent():
    coordinator = make_coordinator()
    coordinator.registry.mark_thinking("2")
    coordinator.begin_handoff("2", "Database Expert", "indexes")

    coordinator.end_handoff("2", "1")
    coordinator.end_handoff("2", "1")

    assert coordinator.registry.get("2").status == ExpertStatus.THINKING
    assert coordinator.registry.get("1").status == ExpertStatus.ACTIVE
    assert coordinator.registry.get("1").collaboration is None
    assert coordinator.open_handoffs() == []


def test_peer_with_queued_work_returns_to_queued():
    coordinator = make_coordinator()
    coordinator.pending_work = lambda agent_id: agent_id == "1"
    coordinator.registry.mark_thinking("2")
    coordinator.begin_handoff("2", "Database Expert", "indexes")

    released = coordinator.release("2", resume_requester=False)

    assert released == ["1"]
    assert coordinator.registry.get("1").status == ExpertStatus.QUEUED
    assert coordinator.registry.get("2").status == ExpertStatus.ACTIVE


def test_peer_without_pending_work_returns_to_active():
    coordinator = make_coordinator()
    coordinator.pending_work = lambda agent_id: False
    coordinator.registry.mark_queued("1")
    coordinator.registry.mark_thinking("2")
    coordinator.begin_handoff("2", "Database Expert", "indexes")

    coordinator.release("2", resume_requester=False)

    assert coordinator.registry.get("1").status == ExpertStatus.ACTIVE


def test_new_handoff_releases_previous_peer():
    coordinator = make_coordinator()
    coordinator.registry.mark_thinking("2")
    coordinator.begin_handoff("2", "Database Expert", "indexes")

    coordinator.begin_handoff("2", "Backend Expert", "workers")

    assert coordinator.registry.get("1").status == ExpertStatus.ACTIVE
    assert coordinator.registry.get("5").status == ExpertStatus.COLLABORATING
    assert [handoff.peer_id for handoff in coordinator.open_handoffs()] == ["5"]


def test_require_peer_raises_when_nobody_matches():
    coordinator = make_coordinator()

    with pytest.raises(HandoffTargetNotFound):
        coordinator.require_peer("2", "Quantum Physicist")
    assert coordinator.require_peer("2", "Backend").id == "5"
