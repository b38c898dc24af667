"""Exception taxonomy for the expert scheduler and knowledge store.

Synchronous validation failures (unknown target, missing version) are raised
straight back to the caller. Execution failures are wrapped in
``TaskExecutionFailed`` and recorded on the task instead of escaping the
scheduling loop.
"""

from __future__ import annotations

from typing import Iterable, Optional


class ExpertverseError(Exception):
    """Base class for all library errors."""


class InvalidTarget(ExpertverseError):
    """Raised when a task or operation references an unknown expert."""

    def __init__(self, agent_id: str, known: Optional[Iterable[str]] = None) -> None:
        self.agent_id = agent_id
        message = f"No expert registered with id '{agent_id}'."
        known_ids = sorted(known or [])
        if known_ids:
            message += f" Known experts: {', '.join(known_ids)}"
        super().__init__(message)


class DuplicateAgent(ExpertverseError):
    """Raised when registering an expert id that already exists."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"An expert with id '{agent_id}' is already registered.")


class VersionNotFound(ExpertverseError):
    """Raised when reverting to a version absent from an expert's history."""

    def __init__(self, agent_id: str, version: int, *, current: Optional[int] = None) -> None:
        self.agent_id = agent_id
        self.version = version
        self.current = current
        if current is not None and version == current:
            message = (
                f"Version v{version} is the current knowledge of expert '{agent_id}'; "
                "reverting to it would be a no-op."
            )
        else:
            message = f"Version v{version} not found in history of expert '{agent_id}'."
        super().__init__(message)


class TaskExecutionFailed(ExpertverseError):
    """Describes a failed handler call; its text is recorded on the task."""

    def __init__(self, *, task_id: str, kind: str, underlying: BaseException) -> None:
        self.task_id = task_id
        self.kind = kind
        self.underlying = underlying
        message = (
            f"{kind} task {task_id} failed: {type(underlying).__name__}: {underlying}\n\n"
            "Remediation tips:\n"
            "  - Verify LLM configuration (LLM_PROVIDER, LLM_MODEL, API key)\n"
            "  - Enable DEBUG_LLM=true to inspect prompts/responses\n"
            "  - Resubmit the task once the cause is fixed (no automatic retry)"
        )
        super().__init__(message)


class HandoffTargetNotFound(ExpertverseError):
    """The fuzzy peer lookup found nobody.

    Not an error for the scheduler: the coordinator returns ``None`` and the
    outer task proceeds with the requester's own knowledge. Only raised by
    callers that explicitly require a peer.
    """

    def __init__(self, hint: str) -> None:
        self.hint = hint
        super().__init__(f"No expert matches the consultation hint '{hint}'.")


class UnknownTaskKind(ExpertverseError):
    """Raised when no handler is registered for a task kind."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"No handler registered for task kind '{kind}'.")
