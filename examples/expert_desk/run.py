"""Expert desk session: queue work for a team of experts and watch it drain.

By default the example runs with deterministic handlers (no LLM calls):

    uv run python examples/expert_desk/run.py

To let the experts answer with an LLM (requires provider, model, API key),
pass `--llm`:

    uv run python examples/expert_desk/run.py --llm

With `--llm`, `--war-room "topic"` also runs a moderated debate between the
experts after the queue drains.

Use `--roster platform_team` to load experts from examples/rosters/ instead of
the built-in team, and `--state-dir` to persist the session as JSON between
runs.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from expertverse import (
    ExpertSystem,
    JsonPersistence,
    TaskEvent,
    format_diff,
    load_roster,
)
from expertverse.config import Config
from expertverse.logging_utils import Color, colored


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expert desk session")
    parser.add_argument("--llm", action="store_true", help="Use LLM-backed task handlers")
    parser.add_argument(
        "--roster",
        default=None,
        help="Roster name under examples/rosters/ (default: built-in team)",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Load/save the session from this directory (JSON)",
    )
    parser.add_argument(
        "--question",
        default="@Datbase Expert: which index keeps GET /api/v1/users fast?",
        help="Question asked to the second expert (mention @Name: to consult a colleague)",
    )
    parser.add_argument(
        "--war-room",
        default=None,
        metavar="TOPIC",
        help="Debate TOPIC in the War Room after the queue drains (requires --llm)",
    )
    return parser.parse_args()


def print_event(event: TaskEvent) -> None:
    if event.kind == "handoff" and event.peer is not None:
        print(colored(f"    {event.expert.name} <-> {event.peer.name}: {event.reason}", Color.MAGENTA))


def print_team(system: ExpertSystem) -> None:
    print(colored("\nTeam", Color.CYAN, bold=True))
    for expert in system.list_agents():
        print(
            f"  {expert.name:<20} {expert.status.value:<14} v{expert.version:<3} "
            f"learnings={expert.learnings}"
        )
    stats = system.stats()
    print(
        f"  active={stats.active_experts} total_learnings={stats.total_learnings} "
        f"collaborations={stats.collaborations}"
    )


async def run_session(args: argparse.Namespace) -> ExpertSystem:
    persistence = JsonPersistence(args.state_dir) if args.state_dir else None
    if args.llm:
        Config.validate()
        system = ExpertSystem.with_llm(persistence=persistence)
    else:
        system = ExpertSystem(persistence=persistence)
    system.scheduler.add_listener(print_event)

    await system.persistence.initialize()
    restored = await system.load_state()
    if not restored:
        system.seed(load_roster(args.roster) if args.roster else None)

    experts = system.list_agents()
    asker = experts[1] if len(experts) > 1 else experts[0]
    learner = experts[-1]

    # Background work first, then user-facing work that should jump the queue
    system.self_improve(learner.id)
    system.train(learner.id, "CREATE INDEX idx_users_email ON users(email);")
    chat_task = system.chat(asker.id, args.question)

    print(colored("\nQueue (dispatch order)", Color.CYAN, bold=True))
    for task in system.get_pending_tasks():
        print(f"  {task.priority.name:<8} {task.kind.value:<13} {task.description}")

    await system.drain()

    reply = system.reply_for(chat_task)
    if reply is not None:
        print(colored(f"\n{asker.name} says:", Color.GREEN, bold=True))
        print(reply.text)

    history = system.history_of(learner.id)
    if history:
        print(colored(f"\n{learner.name}: v{history[0].version} -> current", Color.CYAN, bold=True))
        print(format_diff(system.view_diff(learner.id, history[0].version)))

    if args.war_room and args.llm:
        session = await system.war_room(args.war_room)
        print(colored(f"\nWar Room: {session.topic} ({session.outcome})", Color.RED, bold=True))
        for message in session.messages:
            marker = " [consensus]" if message.is_consensus else ""
            print(f"  {message.speaker_name}{marker}: {message.content}")

    print_team(system)
    print(colored("\nActivity (newest first)", Color.CYAN, bold=True))
    for entry in system.activity.entries()[:10]:
        print(f"  [{entry.action}] {entry.expert_name}: {entry.details}")

    if args.state_dir:
        await system.save_state()
    await system.persistence.close()
    return system


async def main(args: argparse.Namespace) -> None:
    try:
        await run_session(args)
    except ValueError as exc:
        if not args.llm:
            raise
        print(f"[warning] {exc}. Falling back to deterministic handlers.")
        args.llm = False
        await run_session(args)


if __name__ == "__main__":
    asyncio.run(main(parse_args()))
